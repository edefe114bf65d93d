"""Monitor tick: sequential fetch, classify, transition, persist and dispatch."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

from .anti_detection import jitter
from .dispatch import DispatchGateway
from .errors import InvalidData, PersistenceFailure, ProductNotFoundError
from .fetcher import FetchSession, PageFetcher
from .models import LogEntry, LogEvent, MonitorState, MonitorSummary, Product, Settings
from .rate_limiter import RateLimiter
from .state_machine import FailureKind, ProductStateMachine
from .store import ProductStore
from .transitions import TransitionDetector
from .validity import ValidityClassifier

logger = logging.getLogger(__name__)


class SchedulerLoop:
    """Runs monitor ticks over the eligible products.

    At most one tick runs at a time; a tick triggered while another is in
    progress returns immediately. Products are checked one after another and
    a stop request takes effect between products.
    """

    def __init__(
        self,
        store: ProductStore,
        fetcher: PageFetcher,
        dispatch: DispatchGateway,
        state_machine: ProductStateMachine | None = None,
        classifier: ValidityClassifier | None = None,
        detector: TransitionDetector | None = None,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = datetime.now,
        rng: random.Random | None = None,
    ):
        """Initialize scheduler.

        Args:
            store: Product and settings store
            fetcher: Source of page snapshots
            dispatch: Event fan-out
            state_machine: Monitor state rules and backoff gate
            classifier: Junk page detection
            detector: Transition detection
            rate_limiter: Outbound request limiter
            sleep: Async sleep in seconds, injectable for tests
            now: Wall clock, injectable for tests
            rng: Random source for identity rotation and pacing jitter
        """
        self.store = store
        self.fetcher = fetcher
        self.dispatch = dispatch
        self.classifier = classifier or ValidityClassifier()
        self.state_machine = state_machine or ProductStateMachine(classifier=self.classifier)
        self.detector = detector or TransitionDetector()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.sleep = sleep
        self.now = now
        self.rng = rng or random.Random()

        self.summary = MonitorSummary()
        self._checking = False
        self._stop_requested = False

    @property
    def is_checking(self) -> bool:
        return self._checking

    def request_stop(self) -> None:
        """Stop the running tick after the product currently being checked."""
        if self._checking:
            logger.info("Stop requested, finishing current product")
        self._stop_requested = True

    @contextmanager
    def _single_flight(self) -> Iterator[bool]:
        if self._checking:
            yield False
            return
        self._checking = True
        self._stop_requested = False
        try:
            yield True
        finally:
            self._checking = False

    # =========================================================================
    # Tick
    # =========================================================================

    async def tick(self) -> bool:
        """Run one monitor tick.

        Returns:
            False if another tick was already running
        """
        with self._single_flight() as acquired:
            if not acquired:
                logger.debug("Check already in progress, skipping tick")
                return False
            await self._run_tick()
            return True

    async def _run_tick(self) -> None:
        try:
            settings = self.store.load_settings()
            products = self.state_machine.select_eligible(self.store.load_products())
        except PersistenceFailure as e:
            logger.error(f"Tick aborted, store unreadable: {e}")
            return

        self.rate_limiter.configure(
            settings.rate_limit_max_requests, settings.rate_limit_window_seconds * 1000
        )

        if products:
            logger.info(f"Checking {len(products)} products...")
            if self.rng.random() < settings.identity_rotation_probability:
                self.fetcher.rotate_identity()

            async with self.fetcher.session() as session:
                for listed in products:
                    if self._stop_requested:
                        logger.info("Tick stopped before checking remaining products")
                        break
                    await self._wait_for_rate_limit()

                    product = self._reload(listed.id)
                    if product is None:
                        continue
                    if not self.state_machine.is_due(product, settings, self.now()):
                        logger.debug(f"Skipping {product.name}: backoff not elapsed")
                        continue

                    await self.check_product(session, product, settings)
                    self.rate_limiter.record()

                    pause_ms = jitter(settings.inter_product_pause_ms, settings.jitter_percent, self.rng)
                    await self.sleep(pause_ms / 1000)

        self.refresh_summary()

    async def _wait_for_rate_limit(self) -> None:
        wait_ms = self.rate_limiter.wait_time()
        while wait_ms > 0:
            logger.info(f"Rate limit reached, waiting {wait_ms / 1000:.1f}s")
            await self.sleep(wait_ms / 1000)
            wait_ms = self.rate_limiter.wait_time()

    def _reload(self, product_id: str) -> Product | None:
        """Re-read a product so edits made since the tick started are respected."""
        try:
            product = self.store.get_product(product_id)
        except PersistenceFailure as e:
            logger.error(f"Could not reload product {product_id}: {e}")
            return None
        if product is None or not self.state_machine.is_eligible(product):
            return None
        return product

    def refresh_summary(self) -> MonitorSummary:
        try:
            self.summary = self.store.get_summary()
        except PersistenceFailure as e:
            logger.error(f"Could not refresh summary: {e}")
        return self.summary

    # =========================================================================
    # Single product
    # =========================================================================

    async def check_product(self, session: FetchSession, product: Product, settings: Settings) -> None:
        """Check one product; never raises."""
        try:
            await self._check(session, product, settings)
        except Exception as e:
            logger.error(f"Unexpected error while checking {product.name}: {e}", exc_info=True)

    async def _check(self, session: FetchSession, product: Product, settings: Settings) -> None:
        now = self.now()
        try:
            snapshot = await session.fetch_snapshot(product.url)
            reason = self.classifier.rejection_reason(snapshot.name, snapshot.price, snapshot.image_url)
            if reason:
                raise InvalidData(f"Invalid product data: {reason}")
        except InvalidData as e:
            await self._handle_failure(product, FailureKind.INVALID, str(e), settings, now)
            return
        except Exception as e:
            message = str(e) or type(e).__name__
            await self._handle_failure(product, FailureKind.FETCH, message, settings, now)
            return

        try:
            result = self.detector.detect(product, snapshot, settings, now)
            updated = self.store.update_product(product.id, result.updates)
        except (PersistenceFailure, ProductNotFoundError) as e:
            # Events are not dispatched unpersisted; the next tick re-detects them
            logger.error(f"Could not save check result for {product.name}: {e}")
            return
        except Exception as e:
            logger.error(f"Could not process check result for {product.name}: {e}", exc_info=True)
            await self._handle_failure(product, FailureKind.FETCH, str(e) or type(e).__name__, settings, now)
            return

        if result.recovered and updated.monitor_state == MonitorState.ACTIVE:
            logger.info(f"{updated.name} recovered from error state")
            self._log(updated.id, LogEvent.CHECK, "Recovered from error state")
        self._log(
            updated.id,
            LogEvent.CHECK,
            f"Checked: {updated.stock_status.value}, ${updated.current_price:.2f}",
        )
        logger.info(f"Checked {updated.name}: {updated.stock_status.value} ${updated.current_price:.2f}")

        if updated.monitor_state == MonitorState.PAUSED:
            if result.events:
                logger.info(f"{updated.name} was paused during the check, events not sent")
            return
        await self.dispatch.dispatch(result.events, settings)

    async def _handle_failure(
        self,
        product: Product,
        kind: FailureKind,
        message: str,
        settings: Settings,
        now: datetime,
    ) -> None:
        outcome = self.state_machine.record_failure(product, kind, message, settings, now)
        try:
            updated = self.store.update_product(product.id, outcome.updates)
        except (PersistenceFailure, ProductNotFoundError) as e:
            logger.error(f"Could not save failure for {product.name}: {e}")
            return

        logger.warning(f"Check failed for {updated.name} ({outcome.error_count} in a row): {message}")
        self._log(updated.id, LogEvent.ERROR, message)

        if updated.monitor_state == MonitorState.PAUSED:
            return
        if outcome.entered_error_state:
            await self.dispatch.notify_error(
                updated,
                f"Failed to check {outcome.error_count} times in a row. Last error: {message}",
                settings,
            )
        if outcome.page_gone:
            await self.dispatch.notify_error(
                updated,
                "This product page keeps returning invalid data. It may have been removed.",
                settings,
            )

    def _log(self, product_id: str, event: LogEvent, details: str) -> None:
        try:
            self.store.append_log(
                LogEntry(timestamp=self.now(), product_id=product_id, event=event, details=details)
            )
        except PersistenceFailure as e:
            logger.error(f"Could not write audit log: {e}")

    # =========================================================================
    # Manual check
    # =========================================================================

    async def check_now(self, product_id: str) -> Product:
        """Check one product immediately, ignoring its backoff gate.

        Raises:
            ProductNotFoundError: No product with this id
        """
        product = self.store.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(f"Product {product_id} not found.")
        settings = self.store.load_settings()

        await self._wait_for_rate_limit()
        async with self.fetcher.session() as session:
            await self.check_product(session, product, settings)
        self.rate_limiter.record()

        self.refresh_summary()
        return self.store.get_product(product_id) or product
