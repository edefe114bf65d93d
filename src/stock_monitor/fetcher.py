"""Playwright-based page fetcher."""

import asyncio
import logging
import random
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from .anti_detection import UserAgentRotator, has_captcha, is_challenge_page
from .errors import FetchFailure
from .models import RawSnapshot
from .parser import ProductPageParser

logger = logging.getLogger(__name__)


class FetchSession(Protocol):
    """Fetch resource held for the duration of one tick."""

    async def fetch_snapshot(self, url: str) -> RawSnapshot:
        """Fetch and extract a page; raises FetchFailure when unreachable."""
        ...


class PageFetcher(Protocol):
    """Source of product snapshots."""

    def session(self) -> AbstractAsyncContextManager[FetchSession]:
        ...

    def rotate_identity(self) -> str:
        ...


class PlaywrightSession:
    """One browser page reused for every fetch in a tick.

    The browser is started on the first fetch, not on construction, and
    everything the session opened is closed by ``close()``. A context the
    session attached to rather than created is left open.
    """

    def __init__(self, fetcher: "PlaywrightPageFetcher"):
        self.fetcher = fetcher
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None

    async def _launch(self) -> None:
        self._playwright = await async_playwright().start()
        if self.fetcher.cdp_url:
            self._browser = await self._playwright.chromium.connect_over_cdp(self.fetcher.cdp_url)
            logger.info(f"Attached to browser at {self.fetcher.cdp_url}")
        else:
            self._browser = await self._playwright.chromium.launch(headless=self.fetcher.headless)
            logger.info("Browser started")

    async def _new_context(self) -> BrowserContext:
        headers = self.fetcher.rotator.headers()
        user_agent = headers.pop("User-Agent")
        self._context = await self._browser.new_context(user_agent=user_agent, extra_http_headers=headers)
        return self._context

    async def monitor_page(self) -> Page:
        if self._page is not None and not self._page.is_closed():
            return self._page
        if self._browser is None:
            await self._launch()
        context = self._context or await self._new_context()
        self._page = await context.new_page()
        return self._page

    async def cart_page(self) -> Page:
        """Page for add-to-cart.

        When attached over CDP the page opens in the user's own browser
        profile, so the cart it fills is the one the user checks out from.
        """
        if not self.fetcher.cdp_url:
            return await self.monitor_page()
        if self._browser is None:
            await self._launch()
        if not self._browser.contexts:
            return await self.monitor_page()
        self._page = await self._browser.contexts[0].new_page()
        return self._page

    async def _read_existing_view(self, url: str) -> RawSnapshot | None:
        """Read a page the user already has open on ``url``, without navigating it."""
        if self._browser is None or not self.fetcher.cdp_url:
            return None
        prefix = url.rstrip("/")
        for context in self._browser.contexts:
            for page in context.pages:
                if page is self._page or not page.url.startswith(prefix):
                    continue
                try:
                    html = await page.content()
                except PlaywrightError as e:
                    logger.debug(f"Existing view on {page.url} not readable: {e}")
                    continue
                snapshot = self.fetcher.parser.parse(html, url)
                if snapshot.name:
                    logger.debug(f"Using existing view for {url}")
                    return snapshot
        return None

    async def fetch_snapshot(self, url: str) -> RawSnapshot:
        """Navigate the monitor page to ``url`` and extract a snapshot.

        Args:
            url: Product page URL

        Returns:
            RawSnapshot extracted from the rendered page

        Raises:
            FetchFailure: Navigation failed, the server errored or a bot challenge blocked the page
        """
        try:
            if self._browser is None and self.fetcher.cdp_url:
                await self._launch()
            existing = await self._read_existing_view(url)
            if existing is not None:
                return existing

            page = await self.monitor_page()
            logger.debug(f"Fetching product: {url}")
            response = await page.goto(
                url, wait_until="domcontentloaded", timeout=self.fetcher.timeout_ms
            )
            await asyncio.sleep(self.fetcher.settle_delay * random.uniform(0.8, 1.2))
            html = await page.content()
        except PlaywrightError as e:
            raise FetchFailure(f"Failed to load {url}: {e}") from e

        status = response.status if response else None
        if is_challenge_page(html, status):
            raise FetchFailure(f"Blocked by bot challenge (HTTP {status})")
        if has_captcha(html):
            logger.warning(f"CAPTCHA markers present on {url}")
        if status is not None and status >= 500:
            raise FetchFailure(f"HTTP {status} from {url}")

        return self.fetcher.parser.parse(html, url)

    async def close(self) -> None:
        """Release everything opened by this session."""
        try:
            if self._page is not None and not self._page.is_closed():
                await self._page.close()
            if self._context is not None:
                await self._context.close()
            if self._browser is not None:
                await self._browser.close()
                logger.info("Browser closed")
        except PlaywrightError as e:
            logger.warning(f"Error closing browser: {e}")
        finally:
            self._page = None
            self._context = None
            self._browser = None
            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except PlaywrightError as e:
                    logger.warning(f"Error stopping Playwright: {e}")
                self._playwright = None


class PlaywrightPageFetcher:
    """PageFetcher rendering pages in Chromium."""

    def __init__(
        self,
        headless: bool = True,
        cdp_url: str | None = None,
        settle_delay: float = 2.0,
        timeout_ms: int = 20_000,
        parser: ProductPageParser | None = None,
        rotator: UserAgentRotator | None = None,
    ):
        """Initialize fetcher.

        Args:
            headless: Run browser in headless mode
            cdp_url: Attach to a running browser instead of launching one
            settle_delay: Seconds to let client-side rendering settle
            timeout_ms: Navigation timeout
            parser: HTML extractor
            rotator: User agent source
        """
        self.headless = headless
        self.cdp_url = cdp_url
        self.settle_delay = settle_delay
        self.timeout_ms = timeout_ms
        self.parser = parser or ProductPageParser()
        self.rotator = rotator or UserAgentRotator()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PlaywrightSession]:
        session = PlaywrightSession(self)
        try:
            yield session
        finally:
            await session.close()

    def rotate_identity(self) -> str:
        return self.rotator.rotate()
