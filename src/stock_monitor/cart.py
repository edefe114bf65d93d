"""Bounded-retry add-to-cart automation."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from .errors import ActionFailure, PersistenceFailure, ProductNotFoundError
from .models import LogEntry, LogEvent, Product, ProductUpdate, PurchaseResult, Settings
from .purchase import PurchaseAction
from .store import ProductStore

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 3.0


class CartAutomation:
    """Retries a purchase action with doubling delays (3s, 6s, ...).

    Only decides retry versus give-up and records the outcome; it never
    touches the product's monitor state.
    """

    def __init__(
        self,
        action: PurchaseAction,
        store: ProductStore,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BASE_DELAY_SECONDS,
    ):
        self.action = action
        self.store = store
        self.sleep = sleep
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def configure(self, settings: Settings) -> None:
        self.max_attempts = settings.add_to_cart_max_attempts
        self.base_delay = settings.add_to_cart_base_delay_seconds

    @staticmethod
    def target_quantity(product: Product) -> int:
        """Ask for the page limit when known, else the configured quantity."""
        if product.max_purchase_qty and product.max_purchase_qty > 0:
            return product.max_purchase_qty
        return product.max_quantity

    def retry_delay(self, attempt: int) -> float:
        return self.base_delay * 2 ** (attempt - 1)

    async def add_to_cart(self, product: Product) -> PurchaseResult:
        """Attempt to add ``product`` to the cart.

        Args:
            product: Product to purchase

        Returns:
            PurchaseResult of the successful attempt

        Raises:
            ActionFailure: All attempts failed
        """
        target = self.target_quantity(product)
        last_error = ""

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self.action.attempt(product, target)
            except Exception as e:
                result = PurchaseResult(success=False, error=str(e) or type(e).__name__)

            if result.success:
                self._record_success(product, result, attempt)
                return result

            last_error = result.error or "Purchase action returned failure"
            logger.warning(
                f"Add-to-cart attempt {attempt}/{self.max_attempts} failed for {product.name}: {last_error}"
            )
            if attempt < self.max_attempts:
                delay = self.retry_delay(attempt)
                logger.info(f"Retrying add-to-cart in {delay:g}s...")
                await self.sleep(delay)

        message = f"Add-to-cart failed after {self.max_attempts} attempts: {last_error}"
        logger.error(f"{product.name}: {message}")
        self._log(LogEntry(timestamp=datetime.now(), product_id=product.id, event=LogEvent.ERROR, details=message))
        raise ActionFailure(message, attempts=self.max_attempts)

    def _record_success(self, product: Product, result: PurchaseResult, attempt: int) -> None:
        details = f"Auto add-to-cart succeeded for {product.name}"
        if result.quantity_requested:
            details += f" (qty: {result.quantity_requested}"
            if result.quantity_obtained is not None and result.quantity_obtained != result.quantity_requested:
                details += f", obtained: {result.quantity_obtained}"
            if result.page_max:
                details += f", page max: {result.page_max}"
            details += ")"
        if result.warning:
            details += f" [Warning: {result.warning}]"
        if attempt > 1:
            details += f" (attempt {attempt}/{self.max_attempts})"
        logger.info(details)
        self._log(LogEntry(timestamp=datetime.now(), product_id=product.id, event=LogEvent.ADD_TO_CART, details=details))

        if result.page_max and result.page_max > 0:
            try:
                self.store.update_product(product.id, ProductUpdate(max_purchase_qty=result.page_max))
            except (PersistenceFailure, ProductNotFoundError) as e:
                logger.error(f"Could not store purchase limit for {product.name}: {e}")

    def _log(self, entry: LogEntry) -> None:
        try:
            self.store.append_log(entry)
        except PersistenceFailure as e:
            logger.error(f"Could not write audit log: {e}")
