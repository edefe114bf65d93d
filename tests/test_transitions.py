"""Tests for transition detection."""

from datetime import datetime, timedelta

import pytest

from stock_monitor.models import EventType, MonitorState, Settings, Snapshot, StockStatus
from stock_monitor.transitions import TransitionDetector, truncate_history

NOW = datetime(2024, 3, 1, 9, 30)


@pytest.fixture
def detector():
    return TransitionDetector()


@pytest.fixture
def settings():
    return Settings()


class TestRestockAndPriceDrop:
    """Restock with a simultaneous price drop."""

    def test_both_events(self, detector, settings, make_product, make_snapshot):
        old = make_product(stock_status=StockStatus.OUT_OF_STOCK, current_price=29.99)
        new = make_snapshot(stock_status=StockStatus.IN_STOCK, price=24.99)

        result = detector.detect(old, new, settings, NOW)

        assert [e.type for e in result.events] == [EventType.RESTOCKED, EventType.PRICE_DROP]
        assert result.updates.current_price == 24.99
        assert result.updates.previous_price == 29.99
        assert result.updates.last_in_stock == NOW
        drop = result.events[1]
        assert drop.old_price == 29.99
        assert drop.new_price == 24.99

    def test_event_product_has_new_values(self, detector, settings, make_product, make_snapshot):
        old = make_product(current_price=29.99)
        result = detector.detect(old, make_snapshot(price=24.99), settings, NOW)
        product = result.events[0].product
        assert product.current_price == 24.99
        assert product.stock_status == StockStatus.IN_STOCK
        assert product.id == old.id


class TestStockEvents:
    """Tests for restock and sell-out detection."""

    def test_unknown_to_in_stock_restocks(self, detector, settings, make_product, make_snapshot):
        old = make_product(stock_status=StockStatus.UNKNOWN)
        result = detector.detect(old, make_snapshot(price=29.99), settings, NOW)
        assert result.has(EventType.RESTOCKED)

    def test_in_stock_to_in_stock_no_event(self, detector, settings, make_product, make_snapshot):
        old = make_product(stock_status=StockStatus.IN_STOCK)
        result = detector.detect(old, make_snapshot(price=29.99), settings, NOW)
        assert result.events == []
        assert "last_in_stock" not in result.updates.model_fields_set

    def test_limited_to_in_stock_no_event(self, detector, settings, make_product, make_snapshot):
        old = make_product(stock_status=StockStatus.LIMITED)
        result = detector.detect(old, make_snapshot(price=29.99), settings, NOW)
        assert not result.has(EventType.RESTOCKED)

    def test_sold_out(self, detector, settings, make_product, make_snapshot):
        old = make_product(stock_status=StockStatus.IN_STOCK)
        new = make_snapshot(stock_status=StockStatus.OUT_OF_STOCK, price=29.99)
        result = detector.detect(old, new, settings, NOW)
        assert [e.type for e in result.events] == [EventType.SOLD_OUT]


class TestPriceChanges:
    """Tests for price drop detection."""

    def test_drop_below_threshold_records_previous_price(self, detector, settings, make_product, make_snapshot):
        old = make_product(stock_status=StockStatus.IN_STOCK, current_price=100.0)
        result = detector.detect(old, make_snapshot(price=95.0), settings, NOW)

        assert result.events == []
        assert result.updates.previous_price == 100.0
        assert result.updates.current_price == 95.0

    def test_drop_exactly_at_threshold(self, detector, settings, make_product, make_snapshot):
        old = make_product(stock_status=StockStatus.IN_STOCK, current_price=100.0)
        result = detector.detect(old, make_snapshot(price=90.0), settings, NOW)
        assert result.has(EventType.PRICE_DROP)

    def test_price_increase(self, detector, settings, make_product, make_snapshot):
        old = make_product(stock_status=StockStatus.IN_STOCK, current_price=20.0)
        result = detector.detect(old, make_snapshot(price=25.0), settings, NOW)
        assert result.events == []
        assert "previous_price" not in result.updates.model_fields_set

    def test_missing_new_price_keeps_old(self, detector, settings, make_product, make_snapshot):
        old = make_product(stock_status=StockStatus.IN_STOCK, current_price=20.0)
        result = detector.detect(old, make_snapshot(price=0.0), settings, NOW)
        assert result.updates.current_price == 20.0
        assert result.events == []

    def test_first_price_is_not_a_drop(self, detector, settings, make_product, make_snapshot):
        old = make_product(stock_status=StockStatus.IN_STOCK, current_price=0.0)
        result = detector.detect(old, make_snapshot(price=10.0), settings, NOW)
        assert result.events == []


class TestUpdates:
    """Tests for the persisted fields."""

    def test_resets_errors(self, detector, settings, make_product, make_snapshot):
        old = make_product(error_count=4, last_error="timeout")
        result = detector.detect(old, make_snapshot(), settings, NOW)
        assert result.updates.error_count == 0
        assert result.updates.last_error is None
        assert "last_error" in result.updates.model_fields_set
        assert result.updates.last_checked == NOW

    def test_error_state_recovers(self, detector, settings, make_product, make_snapshot):
        old = make_product(monitor_state=MonitorState.ERROR, error_count=12)
        result = detector.detect(old, make_snapshot(), settings, NOW)
        assert result.recovered is True
        assert result.updates.monitor_state == MonitorState.ACTIVE
        assert result.updates.error_count == 0

    def test_active_state_untouched(self, detector, settings, make_product, make_snapshot):
        result = detector.detect(make_product(), make_snapshot(), settings, NOW)
        assert result.recovered is False
        assert "monitor_state" not in result.updates.model_fields_set

    def test_short_new_name_keeps_old(self, detector, settings, make_product, make_snapshot):
        result = detector.detect(make_product(name="Fire Truck"), make_snapshot(name="Toy"), settings, NOW)
        assert result.updates.name == "Fire Truck"

    def test_new_name_and_image_preferred(self, detector, settings, make_product, make_snapshot):
        new = make_snapshot(name="Lego City Fire Truck 60374", image_url="https://cdn.example.com/new.jpg")
        result = detector.detect(make_product(), new, settings, NOW)
        assert result.updates.name == "Lego City Fire Truck 60374"
        assert result.updates.image_url == "https://cdn.example.com/new.jpg"

    def test_empty_image_keeps_old(self, detector, settings, make_product, make_snapshot):
        old = make_product()
        result = detector.detect(old, make_snapshot(image_url=""), settings, NOW)
        assert result.updates.image_url == old.image_url

    def test_history_newest_first(self, detector, settings, make_product, make_snapshot):
        earlier = Snapshot(timestamp=NOW - timedelta(hours=1), price=29.99, stock_status=StockStatus.OUT_OF_STOCK)
        old = make_product(history=[earlier])
        result = detector.detect(old, make_snapshot(), settings, NOW)
        assert [s.timestamp for s in result.updates.history] == [NOW, earlier.timestamp]

    def test_history_truncated(self, detector, make_product, make_snapshot):
        settings = Settings(max_history_per_product=3)
        history = [
            Snapshot(timestamp=NOW - timedelta(minutes=i), price=29.99) for i in range(1, 4)
        ]
        result = detector.detect(make_product(history=history), make_snapshot(), settings, NOW)

        assert len(result.updates.history) == 3
        assert result.updates.history[0].timestamp == NOW
        # Oldest entry dropped
        assert history[-1].timestamp not in [s.timestamp for s in result.updates.history]

    def test_idempotent(self, detector, settings, make_product, make_snapshot):
        old = make_product(current_price=29.99)
        new = make_snapshot(price=24.99)

        first = detector.detect(old, new, settings, NOW)
        second = detector.detect(old, new, settings, NOW)

        assert first.model_dump() == second.model_dump()


class TestTruncateHistory:
    def test_keeps_newest(self):
        history = [Snapshot(timestamp=NOW - timedelta(minutes=i)) for i in range(5)]
        assert truncate_history(history, 2) == history[:2]
