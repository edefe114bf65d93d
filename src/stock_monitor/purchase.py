"""Add-to-cart purchase action driven through Playwright."""

import logging
from typing import Protocol

from bs4 import BeautifulSoup
from playwright.async_api import Page
from playwright.async_api import Error as PlaywrightError

from .anti_detection import human_delay
from .fetcher import PlaywrightPageFetcher
from .models import Product, PurchaseResult, Variant
from .parser import ADD_BUTTON_SELECTORS

logger = logging.getLogger(__name__)

VARIANT_SELECTORS = {
    "size": (
        '[data-testid="size-selector"] button',
        ".size-selector button",
        '[class*="sizeOption"] button',
    ),
    "colour": (
        '[data-testid="colour-selector"] button',
        ".colour-selector button",
        '[class*="colourOption"] button',
        '[class*="colorOption"] button',
    ),
}

QUANTITY_INPUT = '[data-testid="quantity-input"] input, input[name="quantity"], .quantity-input input'

CART_ERROR_SELECTORS = (
    '[data-testid="add-to-cart-error"]',
    '[data-testid="cart-error"]',
    ".cart-error-message",
    ".add-to-cart-error",
    '[class*="errorMessage"]',
    '[role="alert"]',
)


class PurchaseAction(Protocol):
    """Single add-to-cart attempt; acquires its own resources."""

    async def attempt(self, product: Product, target_quantity: int) -> PurchaseResult:
        ...


class PlaywrightPurchaseAction:
    """Opens the product page and clicks add to cart.

    Attached over CDP, the page opens in the user's own browser profile;
    otherwise each attempt runs in a throwaway context.
    """

    def __init__(self, fetcher: PlaywrightPageFetcher):
        self.fetcher = fetcher

    async def attempt(self, product: Product, target_quantity: int) -> PurchaseResult:
        """Run one add-to-cart attempt.

        Args:
            product: Product to add, with its selected variants
            target_quantity: Quantity to request

        Returns:
            PurchaseResult describing success, quantities and warnings
        """
        async with self.fetcher.session() as session:
            try:
                page = await session.cart_page()
                await page.goto(product.url, wait_until="domcontentloaded", timeout=self.fetcher.timeout_ms)
                await human_delay(1.5, 2.5)
                return await self._add_to_cart(page, product.selected_variants, target_quantity)
            except PlaywrightError as e:
                return PurchaseResult(success=False, error=str(e))

    async def _add_to_cart(self, page: Page, variants: list[Variant], quantity: int) -> PurchaseResult:
        for variant in variants:
            await self._select_variant(page, variant)
            await human_delay(0.3, 0.7)

        soup = BeautifulSoup(await page.content(), "html.parser")
        page_max = self.fetcher.parser.extract_max_purchase_qty(soup)
        target = min(quantity, page_max) if page_max else quantity

        if target > 1:
            qty_input = await page.query_selector(QUANTITY_INPUT)
            if qty_input:
                await qty_input.fill(str(target))
                await human_delay(0.2, 0.5)

        button = None
        for selector in ADD_BUTTON_SELECTORS:
            button = await page.query_selector(selector)
            if button:
                break
        if button is None:
            return PurchaseResult(success=False, error="Add to cart button not found.")
        if await button.is_disabled():
            return PurchaseResult(success=False, error="Button disabled (likely out of stock).")

        await human_delay(0.1, 0.4)
        await button.click()
        await human_delay(1.0, 2.0)

        warning = await self._detect_cart_error(page)
        return PurchaseResult(
            success=True,
            quantity_requested=target,
            quantity_obtained=None if warning else target,
            page_max=page_max,
            warning=warning,
        )

    async def _select_variant(self, page: Page, variant: Variant) -> None:
        for selector in VARIANT_SELECTORS.get(variant.type.lower(), ()):
            for button in await page.query_selector_all(selector):
                label = (
                    await button.get_attribute("aria-label")
                    or await button.get_attribute("title")
                    or (await button.inner_text()).strip()
                )
                if variant.value.lower() in label.lower():
                    await button.click()
                    return
        logger.warning(f"Variant {variant.type}={variant.value} not found on page")

    async def _detect_cart_error(self, page: Page) -> str | None:
        for selector in CART_ERROR_SELECTORS:
            element = await page.query_selector(selector)
            if element:
                text = (await element.inner_text()).strip()
                if text:
                    return text
        return None
