"""Data models for the stock monitor."""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class StockStatus(str, Enum):
    """Availability of a product as read from its page."""

    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    LIMITED = "limited"
    UNKNOWN = "unknown"


class MonitorState(str, Enum):
    """Monitoring lifecycle state of a product."""

    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class LogEvent(str, Enum):
    """Type of an audit log entry."""

    CHECK = "check"
    ERROR = "error"
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    PRICE_CHANGE = "price_change"
    ADD_TO_CART = "add_to_cart"


class EventType(str, Enum):
    """Notable transition detected between two checks."""

    RESTOCKED = "restocked"
    SOLD_OUT = "sold_out"
    PRICE_DROP = "price_drop"


def new_product_id() -> str:
    return uuid.uuid4().hex


class Variant(BaseModel):
    """A selectable product option such as a size or colour."""

    type: str = Field(description="Variant kind, e.g. size or colour")
    value: str = Field(description="Displayed option value")
    available: bool = Field(default=True)


class Snapshot(BaseModel):
    """One historical observation of price and availability."""

    timestamp: datetime
    price: float = Field(default=0.0)
    stock_status: StockStatus = Field(default=StockStatus.UNKNOWN)
    variants_available: list[str] = Field(default_factory=list)


class RawSnapshot(BaseModel):
    """Product data as extracted from a fetched page, not yet validated."""

    name: str = Field(default="")
    price: float = Field(default=0.0)
    stock_status: StockStatus = Field(default=StockStatus.UNKNOWN)
    image_url: str = Field(default="")
    variants: list[Variant] = Field(default_factory=list)
    product_id: str = Field(default="")
    breadcrumb: list[str] = Field(default_factory=list)
    max_purchase_qty: int | None = Field(default=None)

    def available_variant_values(self) -> list[str]:
        return [v.value for v in self.variants if v.available]


class Product(BaseModel):
    """A monitored product page."""

    id: str = Field(default_factory=new_product_id, description="Opaque identifier")
    url: str = Field(description="Product page URL, unique across the store")
    name: str = Field(default="Unknown Product")
    image_url: str = Field(default="")

    current_price: float = Field(default=0.0)
    previous_price: float | None = Field(default=None, description="Set on a detected drop")

    stock_status: StockStatus = Field(default=StockStatus.UNKNOWN)

    monitor_state: MonitorState = Field(default=MonitorState.ACTIVE)
    error_count: int = Field(default=0, ge=0)
    last_error: str | None = Field(default=None)
    last_checked: datetime | None = Field(default=None)
    last_in_stock: datetime | None = Field(default=None)
    added_at: datetime = Field(default_factory=datetime.now)

    history: list[Snapshot] = Field(default_factory=list, description="Newest first")

    auto_add_to_cart: bool = Field(default=False)
    selected_variants: list[Variant] = Field(default_factory=list)
    max_quantity: int = Field(default=1, ge=1)
    max_purchase_qty: int | None = Field(default=None, description="Limit learned from the page")
    tags: list[str] = Field(default_factory=list)


class ProductUpdate(BaseModel):
    """Explicit partial update of a product.

    Only fields that were set on construction are applied, so ``None`` can be
    written deliberately (e.g. clearing ``last_error``).

    ``monitor_state_from`` guards automatic state changes: when set,
    ``monitor_state`` is only written if the product is still in one of the
    listed states at the moment the update is applied.
    """

    name: str | None = None
    image_url: str | None = None
    current_price: float | None = None
    previous_price: float | None = None
    stock_status: StockStatus | None = None
    monitor_state: MonitorState | None = None
    error_count: int | None = Field(default=None, ge=0)
    last_error: str | None = None
    last_checked: datetime | None = None
    last_in_stock: datetime | None = None
    history: list[Snapshot] | None = None
    auto_add_to_cart: bool | None = None
    selected_variants: list[Variant] | None = None
    max_quantity: int | None = Field(default=None, ge=1)
    max_purchase_qty: int | None = None
    tags: list[str] | None = None

    monitor_state_from: list[MonitorState] | None = None

    def allows_state_change(self, product: Product) -> bool:
        return self.monitor_state_from is None or product.monitor_state in self.monitor_state_from

    def apply(self, product: Product) -> Product:
        """Return a copy of ``product`` with the set fields replaced."""
        updated = product.model_copy(deep=True)
        for name in self.model_fields_set - {"monitor_state_from"}:
            if name == "monitor_state" and not self.allows_state_change(product):
                continue
            setattr(updated, name, getattr(self, name))
        return updated

    def is_empty(self) -> bool:
        return not self.model_fields_set


class Settings(BaseModel):
    """Process-wide monitor configuration."""

    model_config = ConfigDict(extra="ignore")

    check_interval_seconds: float = Field(default=30, ge=0, description="Seconds between ticks")
    jitter_percent: float = Field(default=15, ge=0, le=100)
    max_products: int = Field(default=50, ge=1)
    global_auto_add: bool = Field(default=False)
    notifications_enabled: bool = Field(default=True)
    audio_alert_enabled: bool = Field(default=True)
    audio_volume: float = Field(default=0.7, ge=0, le=1)
    price_drop_threshold: float = Field(default=10, ge=0, description="Percent")
    webhook_enabled: bool = Field(default=False)
    webhook_url: str = Field(default="")
    max_history_per_product: int = Field(default=500, ge=1)

    error_state_threshold: int = Field(default=5, ge=1, description="Failures before error state")
    page_gone_threshold: int = Field(default=10, ge=1, description="Junk pages before take-down notice")
    error_state_floor_seconds: float = Field(default=300, ge=0)
    rate_limit_max_requests: int = Field(default=20, ge=1)
    rate_limit_window_seconds: float = Field(default=60, gt=0)
    inter_product_pause_ms: int = Field(default=2000, ge=0)
    identity_rotation_probability: float = Field(default=0.1, ge=0, le=1)
    add_to_cart_max_attempts: int = Field(default=3, ge=1)
    add_to_cart_base_delay_seconds: float = Field(default=3, ge=0)


class LogEntry(BaseModel):
    """An audit trail entry."""

    timestamp: datetime = Field(default_factory=datetime.now)
    product_id: str | None = Field(default=None)
    event: LogEvent
    details: str = Field(default="")
    old_price: float | None = Field(default=None)
    new_price: float | None = Field(default=None)


class CheckoutProfile(BaseModel):
    """Saved checkout details, carried through export and import."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=new_product_id)
    name: str = Field(default="Default")
    is_default: bool = Field(default=False)


class ExportBundle(BaseModel):
    """Portable dump of the whole store."""

    version: str
    exported_at: datetime = Field(default_factory=datetime.now)
    products: list[Product]
    settings: Settings | None = Field(default=None)
    profiles: list[CheckoutProfile] | None = Field(default=None)


class MonitorEvent(BaseModel):
    """A detected transition with the product context needed to report it."""

    type: EventType
    product: Product
    timestamp: datetime
    old_price: float | None = Field(default=None)
    new_price: float | None = Field(default=None)

    @property
    def drop_percent(self) -> float | None:
        if not self.old_price or self.new_price is None:
            return None
        return (self.old_price - self.new_price) / self.old_price * 100


class PurchaseResult(BaseModel):
    """Outcome reported by a purchase action attempt."""

    success: bool = Field(default=False)
    quantity_requested: int | None = Field(default=None)
    quantity_obtained: int | None = Field(default=None)
    page_max: int | None = Field(default=None)
    warning: str | None = Field(default=None)
    error: str | None = Field(default=None)


class MonitorSummary(BaseModel):
    """Counts exposed to the user interface after each tick."""

    total: int = Field(default=0)
    active: int = Field(default=0)
    paused: int = Field(default=0)
    error: int = Field(default=0)
    in_stock: int = Field(default=0, description="Active products currently in stock")
    updated_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_products(cls, products: list[Product]) -> "MonitorSummary":
        return cls(
            total=len(products),
            active=sum(1 for p in products if p.monitor_state == MonitorState.ACTIVE),
            paused=sum(1 for p in products if p.monitor_state == MonitorState.PAUSED),
            error=sum(1 for p in products if p.monitor_state == MonitorState.ERROR),
            in_stock=sum(
                1
                for p in products
                if p.monitor_state == MonitorState.ACTIVE
                and p.stock_status == StockStatus.IN_STOCK
            ),
        )
