"""User-facing monitor operations and the long-running daemon."""

import asyncio
import logging
import random
import signal
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path

import yaml

from .cart import CartAutomation
from .dispatch import DispatchGateway
from .errors import DuplicateProductError, FetchFailure, ProductLimitError, ProductNotFoundError
from .fetcher import PageFetcher
from .models import (
    CheckoutProfile,
    ExportBundle,
    LogEntry,
    LogEvent,
    MonitorSummary,
    Product,
    ProductUpdate,
    RawSnapshot,
    Settings,
    Snapshot,
    StockStatus,
    Variant,
)
from .notifier import ConsoleNotifier, Notifier
from .purchase import PurchaseAction
from .scheduler import SchedulerLoop
from .state_machine import ProductStateMachine
from .store import ProductStore
from .timer import AlarmController, AsyncioAlarm
from .validity import ValidityClassifier, is_valid_product_url, name_from_url
from .webhook import WebhookSink

logger = logging.getLogger(__name__)

IDENTITY_ROTATION_SECONDS = 600
# How often the daemon re-reads the store for edits made by other processes
RESYNC_SECONDS = 15


class MonitorService:
    """Wires the engine together and exposes the user operations."""

    def __init__(
        self,
        store: ProductStore,
        fetcher: PageFetcher,
        notifier: Notifier | None = None,
        webhook: WebhookSink | None = None,
        purchase: PurchaseAction | None = None,
        classifier: ValidityClassifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = datetime.now,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.now = now
        self.classifier = classifier or ValidityClassifier()
        self.state_machine = ProductStateMachine(classifier=self.classifier)
        self.cart = CartAutomation(purchase, store, sleep=sleep) if purchase is not None else None
        self.dispatch = DispatchGateway(store, notifier or ConsoleNotifier(), webhook or WebhookSink(), self.cart)
        self.scheduler = SchedulerLoop(
            store,
            fetcher,
            self.dispatch,
            state_machine=self.state_machine,
            classifier=self.classifier,
            sleep=sleep,
            now=now,
            rng=rng,
        )
        self.alarm = AlarmController(AsyncioAlarm(self.scheduler.tick), self.state_machine)
        self._running = False
        self._shutdown: asyncio.Event | None = None

    @property
    def summary(self) -> MonitorSummary:
        return self.scheduler.summary

    def _refresh(self) -> None:
        """Re-evaluate the alarm and the summary after a change."""
        if self._running:
            self.alarm.ensure_running(self.store)
        self.scheduler.refresh_summary()

    def _require(self, product_id: str) -> Product:
        product = self.store.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(f"Product {product_id} not found.")
        return product

    # =========================================================================
    # Products
    # =========================================================================

    async def add_product(
        self,
        url: str,
        auto_add_to_cart: bool = False,
        selected_variants: list[Variant] | None = None,
        max_quantity: int = 1,
    ) -> Product:
        """Start monitoring a product page.

        The page is fetched once to seed the record. When it is unreachable
        or returns junk the product is still added, named after its URL and
        marked out of stock with one recorded error.

        Args:
            url: Product page URL
            auto_add_to_cart: Add to cart automatically on restock
            selected_variants: Variants to select when adding to cart
            max_quantity: Quantity to request when the page shows no limit

        Returns:
            The stored product

        Raises:
            ValueError: URL is not a product page URL
            DuplicateProductError: URL is already monitored
            ProductLimitError: Product limit reached
        """
        url = url.strip()
        if not is_valid_product_url(url):
            raise ValueError(f"Invalid product URL: {url}")

        settings = self.store.load_settings()
        products = self.store.load_products()
        if any(p.url == url for p in products):
            raise DuplicateProductError("Product URL is already being monitored.")
        if len(products) >= settings.max_products:
            raise ProductLimitError(f"Maximum product limit ({settings.max_products}) reached.")

        now = self.now()
        snapshot: RawSnapshot | None = None
        error: str | None = None
        try:
            async with self.fetcher.session() as session:
                snapshot = await session.fetch_snapshot(url)
            reason = self.classifier.rejection_reason(snapshot.name, snapshot.price, snapshot.image_url)
            if reason:
                error = f"Page returned invalid data ({reason}). Will retry automatically."
        except FetchFailure as e:
            error = f"Page may be temporarily unavailable ({e}). Will retry automatically."

        common = {
            "url": url,
            "auto_add_to_cart": auto_add_to_cart,
            "selected_variants": selected_variants or [],
            "max_quantity": max_quantity,
            "last_checked": now,
            "added_at": now,
        }
        if error or snapshot is None:
            logger.warning(f"Adding {url} without page data: {error}")
            product = Product(
                name=name_from_url(url),
                stock_status=StockStatus.OUT_OF_STOCK,
                error_count=1,
                last_error=error,
                **common,
            )
        else:
            product = Product(
                name=snapshot.name,
                image_url=snapshot.image_url,
                current_price=snapshot.price,
                stock_status=snapshot.stock_status,
                last_in_stock=now if snapshot.stock_status == StockStatus.IN_STOCK else None,
                max_purchase_qty=snapshot.max_purchase_qty,
                history=[
                    Snapshot(
                        timestamp=now,
                        price=snapshot.price,
                        stock_status=snapshot.stock_status,
                        variants_available=snapshot.available_variant_values(),
                    )
                ],
                **common,
            )

        added = self.store.add_product(product)
        self.store.append_log(
            LogEntry(
                timestamp=now,
                product_id=added.id,
                event=LogEvent.CHECK,
                details=f"Started monitoring {added.name}",
            )
        )

        if (
            error is None
            and added.stock_status == StockStatus.IN_STOCK
            and (added.auto_add_to_cart or settings.global_auto_add)
        ):
            await self.dispatch.run_cart(added, settings)

        self._refresh()
        return added

    def remove_product(self, product_id: str) -> bool:
        removed = self.store.remove_product(product_id)
        if removed:
            logger.info(f"Removed product {product_id}")
        self._refresh()
        return removed

    def update_product(self, product_id: str, update: ProductUpdate) -> Product:
        if update.is_empty():
            return self._require(product_id)
        product = self.store.update_product(product_id, update)
        self._refresh()
        return product

    def list_products(self) -> list[Product]:
        return self.store.load_products()

    def toggle_monitor(self, product_id: str) -> Product:
        product = self._require(product_id)
        return self.update_product(product_id, self.state_machine.toggle(product))

    def pause(self, product_id: str) -> Product:
        return self.update_product(product_id, self.state_machine.pause())

    def resume(self, product_id: str) -> Product:
        return self.update_product(product_id, self.state_machine.resume())

    def start_all(self) -> int:
        """Resume every product; returns how many were updated."""
        products = self.store.load_products()
        for product in products:
            self.store.update_product(product.id, self.state_machine.resume())
        logger.info(f"Started monitoring {len(products)} products")
        self._refresh()
        return len(products)

    def stop_all(self) -> int:
        """Pause every product and drain the running tick."""
        self.scheduler.request_stop()
        self.alarm.stop()
        products = self.store.load_products()
        for product in products:
            self.store.update_product(product.id, self.state_machine.pause())
        logger.info(f"Paused {len(products)} products")
        self._refresh()
        return len(products)

    async def check_now(self, product_id: str) -> Product:
        product = await self.scheduler.check_now(product_id)
        self._refresh()
        return product

    async def add_to_cart(self, product_id: str) -> bool:
        """Run add-to-cart for a product on demand."""
        product = self._require(product_id)
        if self.cart is None:
            raise RuntimeError("No purchase action configured")
        return await self.dispatch.run_cart(product, self.store.load_settings())

    # =========================================================================
    # Settings, logs & profiles
    # =========================================================================

    def get_settings(self) -> Settings:
        return self.store.load_settings()

    def update_settings(self, **changes) -> Settings:
        settings = self.store.update_settings(**changes)
        logger.info(f"Settings updated: {', '.join(sorted(changes))}")
        self._refresh()
        return settings

    def get_logs(self, limit: int = 200, offset: int = 0) -> list[LogEntry]:
        return self.store.get_logs(limit, offset)

    def clear_logs(self) -> None:
        self.store.clear_logs()

    def get_profiles(self) -> list[CheckoutProfile]:
        return self.store.get_profiles()

    def save_profile(self, profile: CheckoutProfile) -> None:
        self.store.save_profile(profile)

    def delete_profile(self, profile_id: str) -> None:
        self.store.delete_profile(profile_id)

    # =========================================================================
    # Export / Import
    # =========================================================================

    def export_data(self) -> ExportBundle:
        return self.store.export_all()

    def export_to_file(self, filepath: Path | str) -> Path:
        """Write an export bundle; ``.yaml``/``.yml`` files get YAML, others JSON."""
        filepath = Path(filepath)
        bundle = self.export_data()
        if filepath.suffix.lower() in (".yaml", ".yml"):
            text = yaml.dump(
                bundle.model_dump(mode="json"), allow_unicode=True, default_flow_style=False, sort_keys=False
            )
        else:
            text = bundle.model_dump_json(indent=2)
        filepath.write_text(text, encoding="utf-8")
        logger.info(f"Exported {len(bundle.products)} products to {filepath}")
        return filepath

    def import_data(self, raw: dict) -> int:
        self.store.import_all(raw)
        self._refresh()
        return len(self.store.load_products())

    def import_from_file(self, filepath: Path | str) -> int:
        """Import a JSON or YAML export bundle, replacing stored state."""
        text = Path(filepath).read_text(encoding="utf-8")
        # JSON documents are valid YAML
        raw = yaml.safe_load(text)
        return self.import_data(raw)

    # =========================================================================
    # Daemon
    # =========================================================================

    async def _rotate_identity_periodically(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.fetcher.rotate_identity()

    def shutdown(self) -> None:
        if self._shutdown is not None:
            self._shutdown.set()

    async def run(self, rotation_interval: float = IDENTITY_ROTATION_SECONDS) -> None:
        """Monitor until SIGINT/SIGTERM or ``shutdown()``.

        The current product check is allowed to finish before returning.
        """
        loop = asyncio.get_running_loop()
        self._shutdown = asyncio.Event()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.shutdown)
                installed.append(sig)
            except NotImplementedError:
                logger.debug(f"Signal handler for {sig!r} not supported on this platform")

        self._running = True
        rotation = asyncio.create_task(self._rotate_identity_periodically(rotation_interval))
        logger.info(f"Monitor started with store {self.store.store_path}")
        try:
            while not self._shutdown.is_set():
                self._refresh()
                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=RESYNC_SECONDS)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("Shutting down, waiting for the current check to finish...")
            self._running = False
            self.scheduler.request_stop()
            self.alarm.stop()
            rotation.cancel()
            await self.alarm.alarm.drain()
            for sig in installed:
                loop.remove_signal_handler(sig)
            logger.info("Monitor stopped")
