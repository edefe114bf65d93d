"""Detection of restock, sell-out and price-drop transitions."""

from datetime import datetime

from pydantic import BaseModel, Field

from .models import (
    EventType,
    MonitorEvent,
    MonitorState,
    Product,
    ProductUpdate,
    RawSnapshot,
    Settings,
    Snapshot,
    StockStatus,
)

MIN_NAME_LENGTH = 3

RESTOCK_FROM = (StockStatus.OUT_OF_STOCK, StockStatus.UNKNOWN)


class TransitionResult(BaseModel):
    """Fields to persist and events to dispatch for one valid check."""

    updates: ProductUpdate
    events: list[MonitorEvent] = Field(default_factory=list)
    recovered: bool = Field(default=False, description="Product left the error state")

    def has(self, event_type: EventType) -> bool:
        return any(e.type == event_type for e in self.events)


def truncate_history(history: list[Snapshot], limit: int) -> list[Snapshot]:
    """Keep the ``limit`` newest snapshots (history is newest first)."""
    return history[:limit]


class TransitionDetector:
    """Compares a stored product with a validated snapshot.

    The detector is pure: the same inputs always produce the same result,
    nothing is persisted here.
    """

    def detect(
        self,
        old: Product,
        new: RawSnapshot,
        settings: Settings,
        now: datetime,
    ) -> TransitionResult:
        """Compute updates and events.

        Args:
            old: Product as currently stored
            new: Snapshot that already passed the validity check
            settings: Current settings (threshold, history cap)
            now: Check timestamp

        Returns:
            TransitionResult with updates and zero or more events
        """
        old_status = old.stock_status
        old_price = old.current_price
        new_status = new.stock_status
        new_price = new.price if new.price > 0 else old_price

        snapshot = Snapshot(
            timestamp=now,
            price=new_price,
            stock_status=new_status,
            variants_available=new.available_variant_values(),
        )
        history = truncate_history([snapshot, *old.history], settings.max_history_per_product)

        values: dict = {
            "current_price": new_price,
            "stock_status": new_status,
            "last_checked": now,
            "error_count": 0,
            "last_error": None,
            "history": history,
            "name": new.name if new.name and len(new.name.strip()) > MIN_NAME_LENGTH else old.name,
            "image_url": new.image_url or old.image_url,
            "max_purchase_qty": new.max_purchase_qty if new.max_purchase_qty is not None else old.max_purchase_qty,
        }

        recovered = old.monitor_state == MonitorState.ERROR
        if recovered:
            values["monitor_state"] = MonitorState.ACTIVE
            values["monitor_state_from"] = [MonitorState.ERROR]

        restocked = new_status == StockStatus.IN_STOCK and old_status in RESTOCK_FROM
        if restocked:
            values["last_in_stock"] = now

        sold_out = new_status == StockStatus.OUT_OF_STOCK and old_status == StockStatus.IN_STOCK

        price_dropped = old_price > 0 and new_price > 0 and new_price < old_price
        drop_percent = 0.0
        if price_dropped:
            drop_percent = (old_price - new_price) / old_price * 100
            values["previous_price"] = old_price

        updates = ProductUpdate(**values)
        context = updates.apply(old)

        events: list[MonitorEvent] = []
        if restocked:
            events.append(MonitorEvent(type=EventType.RESTOCKED, product=context, timestamp=now))
        if sold_out:
            events.append(MonitorEvent(type=EventType.SOLD_OUT, product=context, timestamp=now))
        if price_dropped and drop_percent >= settings.price_drop_threshold:
            events.append(
                MonitorEvent(
                    type=EventType.PRICE_DROP,
                    product=context,
                    timestamp=now,
                    old_price=old_price,
                    new_price=new_price,
                )
            )

        return TransitionResult(updates=updates, events=events, recovered=recovered)
