"""YAML-backed persistence for products, settings, logs and profiles."""

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from filelock import FileLock, Timeout
from pydantic import BaseModel, Field, ValidationError

from .errors import (
    DuplicateProductError,
    ImportFormatError,
    PersistenceFailure,
    ProductLimitError,
    ProductNotFoundError,
)
from .models import (
    CheckoutProfile,
    ExportBundle,
    LogEntry,
    MonitorSummary,
    Product,
    ProductUpdate,
    Settings,
)

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0.0"
MAX_LOGS = 5000
LOCK_TIMEOUT_SECONDS = 10.0


class MonitorData(BaseModel):
    """Root document of the store file."""

    version: str = Field(default=EXPORT_VERSION)
    updated_at: datetime = Field(default_factory=datetime.now)
    settings: Settings = Field(default_factory=Settings)
    products: list[Product] = Field(default_factory=list)
    profiles: list[CheckoutProfile] = Field(default_factory=list)
    logs: list[LogEntry] = Field(default_factory=list, description="Newest first")

    def save(self, filepath: Path | str) -> None:
        """Save store data to YAML file."""
        filepath = Path(filepath)
        self.updated_at = datetime.now()
        data = self.model_dump(mode="json")
        filepath.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = filepath.with_suffix(filepath.suffix + ".tmp")
        tmp_path.write_text(
            yaml.dump(data, allow_unicode=True, default_flow_style=False, sort_keys=False),
            encoding="utf-8",
        )
        tmp_path.replace(filepath)

    @classmethod
    def load(cls, filepath: Path | str) -> "MonitorData":
        """Load store data from YAML file."""
        filepath = Path(filepath)
        if not filepath.exists():
            return cls()
        data = yaml.safe_load(filepath.read_text(encoding="utf-8"))
        if data is None:
            return cls()
        return cls.model_validate(data)


class ProductStore:
    """Store with atomic read-modify-write per call.

    Every call re-reads the file under a lock file shared by all processes
    using the same store, so the daemon and CLI invocations never overwrite
    each other's changes. There is no transaction spanning several calls.
    """

    def __init__(
        self,
        store_path: Path | str = "stock_monitor.yaml",
        max_logs: int = MAX_LOGS,
        lock_timeout: float = LOCK_TIMEOUT_SECONDS,
    ):
        self.store_path = Path(store_path)
        self.max_logs = max_logs
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        # Reentrant within a thread, exclusive across processes
        self._lock = FileLock(f"{self.store_path}.lock", timeout=lock_timeout)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            self._lock.acquire()
        except Timeout as e:
            raise PersistenceFailure(f"Store {self.store_path} is locked by another process") from e
        try:
            yield
        finally:
            self._lock.release()

    def _read(self) -> MonitorData:
        try:
            return MonitorData.load(self.store_path)
        except (OSError, yaml.YAMLError, ValidationError) as e:
            raise PersistenceFailure(f"Failed to read {self.store_path}: {e}") from e

    def _write(self, data: MonitorData) -> None:
        try:
            data.save(self.store_path)
        except (OSError, yaml.YAMLError) as e:
            raise PersistenceFailure(f"Failed to write {self.store_path}: {e}") from e

    def _modify(self, mutate: Callable[[MonitorData], Any]) -> Any:
        with self._locked():
            data = self._read()
            result = mutate(data)
            self._write(data)
            return result

    # =========================================================================
    # Products
    # =========================================================================

    def load_products(self) -> list[Product]:
        with self._locked():
            return self._read().products

    def save_products(self, products: list[Product]) -> None:
        def mutate(data: MonitorData) -> None:
            data.products = list(products)

        self._modify(mutate)

    def get_product(self, product_id: str) -> Product | None:
        for product in self.load_products():
            if product.id == product_id:
                return product
        return None

    def add_product(self, product: Product) -> Product:
        """Add a product, enforcing URL uniqueness and the product limit."""

        def mutate(data: MonitorData) -> Product:
            if any(p.url == product.url for p in data.products):
                raise DuplicateProductError("Product URL is already being monitored.")
            if len(data.products) >= data.settings.max_products:
                raise ProductLimitError(
                    f"Maximum product limit ({data.settings.max_products}) reached."
                )
            data.products.append(product)
            return product

        added = self._modify(mutate)
        logger.info(f"Added product {added.id}: {added.name}")
        return added

    def update_product(self, product_id: str, update: ProductUpdate) -> Product:
        """Apply a partial update to the stored product and return it."""

        def mutate(data: MonitorData) -> Product:
            for idx, product in enumerate(data.products):
                if product.id == product_id:
                    data.products[idx] = update.apply(product)
                    return data.products[idx]
            raise ProductNotFoundError(f"Product {product_id} not found.")

        return self._modify(mutate)

    def remove_product(self, product_id: str) -> bool:
        def mutate(data: MonitorData) -> bool:
            before = len(data.products)
            data.products = [p for p in data.products if p.id != product_id]
            return len(data.products) < before

        return self._modify(mutate)

    # =========================================================================
    # Settings
    # =========================================================================

    def load_settings(self) -> Settings:
        with self._locked():
            return self._read().settings

    def save_settings(self, settings: Settings) -> None:
        def mutate(data: MonitorData) -> None:
            data.settings = settings

        self._modify(mutate)

    def update_settings(self, **changes: Any) -> Settings:
        """Merge ``changes`` into the stored settings with validation."""

        def mutate(data: MonitorData) -> Settings:
            merged = {**data.settings.model_dump(), **changes}
            data.settings = Settings.model_validate(merged)
            return data.settings

        return self._modify(mutate)

    # =========================================================================
    # Audit log
    # =========================================================================

    def append_log(self, entry: LogEntry) -> None:
        def mutate(data: MonitorData) -> None:
            data.logs.insert(0, entry)
            del data.logs[self.max_logs :]

        self._modify(mutate)

    def get_logs(self, limit: int = 200, offset: int = 0) -> list[LogEntry]:
        with self._locked():
            return self._read().logs[offset : offset + limit]

    def clear_logs(self) -> None:
        def mutate(data: MonitorData) -> None:
            data.logs = []

        self._modify(mutate)

    # =========================================================================
    # Checkout profiles
    # =========================================================================

    def get_profiles(self) -> list[CheckoutProfile]:
        with self._locked():
            return self._read().profiles

    def save_profile(self, profile: CheckoutProfile) -> None:
        """Insert or replace a profile; a default profile clears other defaults."""

        def mutate(data: MonitorData) -> None:
            for idx, existing in enumerate(data.profiles):
                if existing.id == profile.id:
                    data.profiles[idx] = profile
                    break
            else:
                data.profiles.append(profile)
            if profile.is_default:
                for other in data.profiles:
                    if other.id != profile.id:
                        other.is_default = False

        self._modify(mutate)

    def delete_profile(self, profile_id: str) -> None:
        def mutate(data: MonitorData) -> None:
            data.profiles = [p for p in data.profiles if p.id != profile_id]

        self._modify(mutate)

    # =========================================================================
    # Export / Import
    # =========================================================================

    def export_all(self) -> ExportBundle:
        with self._locked():
            data = self._read()
        return ExportBundle(
            version=EXPORT_VERSION,
            exported_at=datetime.now(),
            products=data.products,
            settings=data.settings,
            profiles=data.profiles,
        )

    def import_all(self, raw: dict) -> None:
        """Replace stored state wholesale with an exported bundle.

        Raises:
            ImportFormatError: If ``version`` or ``products`` is missing or malformed
        """
        if not isinstance(raw, dict) or not raw.get("version") or raw.get("products") is None:
            raise ImportFormatError("Invalid import data format.")
        try:
            bundle = ExportBundle.model_validate(raw)
        except ValidationError as e:
            raise ImportFormatError(f"Invalid import data format: {e}") from e

        def mutate(data: MonitorData) -> None:
            data.products = bundle.products
            if bundle.settings is not None:
                data.settings = bundle.settings
            if bundle.profiles is not None:
                data.profiles = bundle.profiles

        self._modify(mutate)
        logger.info(f"Imported {len(bundle.products)} products")

    # =========================================================================
    # Summary & Reporting
    # =========================================================================

    def get_summary(self) -> MonitorSummary:
        return MonitorSummary.from_products(self.load_products())

    def print_status(self) -> str:
        """Get a formatted status string."""
        summary = self.get_summary()
        settings = self.load_settings()
        lines = [
            "=== Stock Monitor Status ===",
            f"Store: {self.store_path}",
            f"Check interval: {settings.check_interval_seconds:g}s",
            "",
            "Products:",
            f"  Total: {summary.total}",
            f"  Active: {summary.active}",
            f"  Paused: {summary.paused}",
            f"  Error: {summary.error}",
            f"  In stock: {summary.in_stock}",
        ]
        return "\n".join(lines)
