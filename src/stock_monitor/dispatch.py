"""Fan-out of detected events to alerts, webhooks and purchase automation."""

import logging
from collections.abc import Awaitable

from .cart import CartAutomation
from .errors import ActionFailure, PersistenceFailure
from .models import EventType, LogEntry, LogEvent, MonitorEvent, Product, Settings
from .notifier import Notifier
from .store import ProductStore
from .webhook import WebhookSink

logger = logging.getLogger(__name__)


class DispatchGateway:
    """Delivers events to every enabled collaborator.

    A failing collaborator is logged and skipped; the remaining ones still run.
    """

    def __init__(
        self,
        store: ProductStore,
        notifier: Notifier,
        webhook: WebhookSink | None = None,
        cart: CartAutomation | None = None,
    ):
        self.store = store
        self.notifier = notifier
        self.webhook = webhook
        self.cart = cart

    async def dispatch(self, events: list[MonitorEvent], settings: Settings) -> None:
        for event in events:
            await self._dispatch_one(event, settings)

    async def _dispatch_one(self, event: MonitorEvent, settings: Settings) -> None:
        product = event.product
        self._audit(event)

        if settings.notifications_enabled:
            if event.type == EventType.RESTOCKED:
                await self._safely(self.notifier.restocked(product), "restock notification")
            elif event.type == EventType.SOLD_OUT:
                await self._safely(self.notifier.sold_out(product), "sold-out notification")
            elif event.type == EventType.PRICE_DROP:
                await self._safely(
                    self.notifier.price_drop(product, event.old_price or 0.0, event.new_price or 0.0),
                    "price-drop notification",
                )

        if settings.audio_alert_enabled and event.type in (EventType.RESTOCKED, EventType.PRICE_DROP):
            await self._safely(self.notifier.audio_alert(settings.audio_volume), "audio alert")

        if self.webhook and settings.webhook_enabled and settings.webhook_url:
            await self._safely(self.webhook.send(settings.webhook_url, event), "webhook")

        if (
            event.type == EventType.RESTOCKED
            and self.cart is not None
            and (product.auto_add_to_cart or settings.global_auto_add)
        ):
            await self.run_cart(product, settings)

    async def run_cart(self, product: Product, settings: Settings) -> bool:
        """Run add-to-cart automation; failure is terminal for this event only."""
        if self.cart is None:
            return False
        self.cart.configure(settings)
        try:
            await self.cart.add_to_cart(product)
            return True
        except ActionFailure as e:
            logger.error(f"Giving up add-to-cart for {product.name}: {e}")
            return False

    async def notify_error(self, product: Product, message: str, settings: Settings) -> None:
        if settings.notifications_enabled:
            await self._safely(self.notifier.error(product, message), "error notification")

    def _audit(self, event: MonitorEvent) -> None:
        product = event.product
        if event.type == EventType.RESTOCKED:
            entry = LogEntry(
                timestamp=event.timestamp,
                product_id=product.id,
                event=LogEvent.IN_STOCK,
                details=f"{product.name} is back in stock at ${product.current_price:.2f}",
            )
        elif event.type == EventType.SOLD_OUT:
            entry = LogEntry(
                timestamp=event.timestamp,
                product_id=product.id,
                event=LogEvent.OUT_OF_STOCK,
                details=f"{product.name} is now out of stock",
            )
        else:
            entry = LogEntry(
                timestamp=event.timestamp,
                product_id=product.id,
                event=LogEvent.PRICE_CHANGE,
                details=(
                    f"Price dropped {event.drop_percent or 0:.1f}%: "
                    f"${event.old_price or 0:.2f} -> ${event.new_price or 0:.2f}"
                ),
                old_price=event.old_price,
                new_price=event.new_price,
            )
        try:
            self.store.append_log(entry)
        except PersistenceFailure as e:
            logger.error(f"Could not write audit log: {e}")

    @staticmethod
    async def _safely(awaitable: Awaitable, label: str) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.error(f"{label} failed: {e}", exc_info=True)
