"""Tests for user operations."""

import asyncio
import json
import random

import pytest
import yaml
from conftest import PRODUCT_URL, START, FakePurchaseAction, FakeWebhook

from stock_monitor.errors import DuplicateProductError, ProductLimitError, ProductNotFoundError
from stock_monitor.models import LogEvent, MonitorState, ProductUpdate, StockStatus, Variant
from stock_monitor.service import MonitorService

OTHER_URL = "https://shop.example/product/wooden-train-set-12345678"


@pytest.fixture
def purchase():
    return FakePurchaseAction()


@pytest.fixture
def service(store, fetcher, notifier, purchase, clock):
    return MonitorService(
        store,
        fetcher,
        notifier=notifier,
        webhook=FakeWebhook(),
        purchase=purchase,
        sleep=clock.sleep,
        now=clock.now,
        rng=random.Random(0),
    )


class TestAddProduct:
    """Tests for adding products."""

    def test_seeds_from_page(self, service, fetcher, make_snapshot):
        fetcher.responses[PRODUCT_URL] = make_snapshot(max_purchase_qty=2)

        product = asyncio.run(service.add_product(PRODUCT_URL, max_quantity=3))

        assert product.name == "Lego City Fire Truck"
        assert product.current_price == 24.99
        assert product.stock_status == StockStatus.IN_STOCK
        assert product.last_in_stock == START
        assert product.max_purchase_qty == 2
        assert product.max_quantity == 3
        assert product.error_count == 0
        assert len(product.history) == 1
        assert service.summary.total == 1

    def test_page_down_still_adds(self, service, store):
        product = asyncio.run(service.add_product(PRODUCT_URL))

        assert product.name == "Lego City Fire Truck"
        assert product.stock_status == StockStatus.OUT_OF_STOCK
        assert product.error_count == 1
        assert "temporarily unavailable" in product.last_error
        assert store.get_product(product.id) is not None

    def test_junk_page_still_adds(self, service, fetcher, make_snapshot):
        fetcher.responses[PRODUCT_URL] = make_snapshot(name="Access Denied")

        product = asyncio.run(service.add_product(PRODUCT_URL))

        assert product.name == "Lego City Fire Truck"
        assert product.error_count == 1
        assert "invalid data" in product.last_error

    def test_invalid_url(self, service, fetcher):
        with pytest.raises(ValueError):
            asyncio.run(service.add_product("not-a-url"))
        assert fetcher.fetched == []

    def test_duplicate_checked_before_fetch(self, service, fetcher, store, make_product):
        store.add_product(make_product())
        with pytest.raises(DuplicateProductError):
            asyncio.run(service.add_product(PRODUCT_URL))
        assert fetcher.fetched == []

    def test_limit(self, service, store, make_product):
        store.update_settings(max_products=1)
        store.add_product(make_product(url=OTHER_URL))
        with pytest.raises(ProductLimitError):
            asyncio.run(service.add_product(PRODUCT_URL))

    def test_variants_stored(self, service, fetcher, make_snapshot):
        fetcher.responses[PRODUCT_URL] = make_snapshot()
        variants = [Variant(type="size", value="M")]
        product = asyncio.run(service.add_product(PRODUCT_URL, selected_variants=variants))
        assert product.selected_variants == variants

    def test_auto_add_when_in_stock(self, service, store, fetcher, purchase, make_snapshot):
        store.update_settings(global_auto_add=True)
        fetcher.responses[PRODUCT_URL] = make_snapshot()

        product = asyncio.run(service.add_product(PRODUCT_URL))

        assert purchase.attempts == [(product.id, 1)]

    def test_no_auto_add_when_out_of_stock(self, service, store, fetcher, purchase, make_snapshot):
        store.update_settings(global_auto_add=True)
        fetcher.responses[PRODUCT_URL] = make_snapshot(stock_status=StockStatus.OUT_OF_STOCK)

        asyncio.run(service.add_product(PRODUCT_URL))

        assert purchase.attempts == []

    def test_logs_addition(self, service, store, fetcher, make_snapshot):
        fetcher.responses[PRODUCT_URL] = make_snapshot()
        asyncio.run(service.add_product(PRODUCT_URL))
        assert store.get_logs()[-1].details == "Started monitoring Lego City Fire Truck"


class TestMonitorControl:
    """Tests for pause, resume, start-all and stop-all."""

    def test_toggle(self, service, store, make_product):
        product = store.add_product(make_product(error_count=2))

        assert service.toggle_monitor(product.id).monitor_state == MonitorState.PAUSED
        assert service.toggle_monitor(product.id).monitor_state == MonitorState.ACTIVE

    def test_toggle_missing(self, service):
        with pytest.raises(ProductNotFoundError):
            service.toggle_monitor("missing")

    def test_start_all_resets_errors(self, service, store, make_product):
        store.add_product(make_product(monitor_state=MonitorState.ERROR, error_count=8, last_error="x"))
        store.add_product(make_product(url=OTHER_URL, monitor_state=MonitorState.PAUSED))

        assert service.start_all() == 2

        for product in store.load_products():
            assert product.monitor_state == MonitorState.ACTIVE
            assert product.error_count == 0
            assert product.last_error is None

    def test_stop_all(self, service, store, make_product):
        store.add_product(make_product())
        store.add_product(make_product(url=OTHER_URL, monitor_state=MonitorState.ERROR))

        assert service.stop_all() == 2

        assert {p.monitor_state for p in store.load_products()} == {MonitorState.PAUSED}
        assert service.summary.paused == 2

    def test_update_and_remove(self, service, store, make_product):
        product = store.add_product(make_product())
        updated = service.update_product(product.id, ProductUpdate(tags=["gift"], max_quantity=2))
        assert updated.tags == ["gift"]

        assert service.remove_product(product.id) is True
        assert service.list_products() == []


class TestCheckAndCart:
    """Tests for on-demand operations."""

    def test_check_now(self, service, store, fetcher, make_product, make_snapshot):
        product = store.add_product(make_product())
        fetcher.responses[product.url] = make_snapshot()

        updated = asyncio.run(service.check_now(product.id))

        assert updated.stock_status == StockStatus.IN_STOCK

    def test_add_to_cart(self, service, store, purchase, make_product):
        product = store.add_product(make_product())
        assert asyncio.run(service.add_to_cart(product.id)) is True
        assert store.get_logs()[0].event == LogEvent.ADD_TO_CART

    def test_add_to_cart_without_action(self, store, fetcher, make_product):
        service = MonitorService(store, fetcher)
        product = store.add_product(make_product())
        with pytest.raises(RuntimeError):
            asyncio.run(service.add_to_cart(product.id))


class TestSettingsAndData:
    """Tests for settings, export and import."""

    def test_update_settings(self, service):
        settings = service.update_settings(price_drop_threshold=5)
        assert settings.price_drop_threshold == 5
        assert service.get_settings().price_drop_threshold == 5

    def test_export_import_json(self, service, store, tmp_path, make_product):
        store.add_product(make_product())
        path = service.export_to_file(tmp_path / "export.json")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["version"] == "1.0.0"
        assert len(data["products"]) == 1

        store.save_products([])
        assert service.import_from_file(path) == 1
        assert store.load_products()[0].url == PRODUCT_URL

    def test_export_yaml(self, service, store, tmp_path, make_product):
        store.add_product(make_product())
        path = service.export_to_file(tmp_path / "export.yaml")

        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        assert data["products"][0]["url"] == PRODUCT_URL


class TestRun:
    """Tests for the daemon loop."""

    def test_shutdown(self, service, store, make_product):
        store.add_product(make_product())

        async def scenario():
            task = asyncio.create_task(service.run())
            await asyncio.sleep(0.05)
            armed = service.alarm.alarm.is_armed
            service.shutdown()
            await task
            return armed

        assert asyncio.run(scenario()) is True
        assert service.alarm.alarm.is_armed is False
