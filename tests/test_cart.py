"""Tests for add-to-cart automation."""

import asyncio

import pytest
from conftest import FakePurchaseAction

from stock_monitor.cart import CartAutomation
from stock_monitor.errors import ActionFailure
from stock_monitor.models import LogEvent, MonitorState, PurchaseResult, Settings


@pytest.fixture
def product(store, make_product):
    return store.add_product(make_product())


def make_cart(store, clock, results):
    action = FakePurchaseAction(results)
    return CartAutomation(action, store, sleep=clock.sleep), action


class TestAddToCart:
    """Tests for the bounded retry."""

    def test_first_attempt_succeeds(self, store, clock, product):
        cart, action = make_cart(store, clock, [PurchaseResult(success=True, quantity_requested=1)])

        result = asyncio.run(cart.add_to_cart(product))

        assert result.success is True
        assert len(action.attempts) == 1
        assert clock.sleeps == []
        assert store.get_logs()[0].event == LogEvent.ADD_TO_CART

    def test_retries_with_doubling_delay(self, store, clock, product):
        cart, action = make_cart(
            store,
            clock,
            [
                PurchaseResult(success=False, error="button missing"),
                RuntimeError("page crashed"),
                PurchaseResult(success=True, quantity_requested=1),
            ],
        )

        result = asyncio.run(cart.add_to_cart(product))

        assert result.success is True
        assert len(action.attempts) == 3
        assert clock.sleeps == [3.0, 6.0]
        assert "attempt 3/3" in store.get_logs()[0].details

    def test_gives_up_after_max_attempts(self, store, clock, product):
        cart, action = make_cart(store, clock, [PurchaseResult(success=False, error="sold out")])

        with pytest.raises(ActionFailure) as exc_info:
            asyncio.run(cart.add_to_cart(product))

        assert exc_info.value.attempts == 3
        assert len(action.attempts) == 3
        assert clock.sleeps == [3.0, 6.0]
        entry = store.get_logs()[0]
        assert entry.event == LogEvent.ERROR
        assert "sold out" in entry.details

    def test_failure_leaves_monitor_state(self, store, clock, product):
        cart, _ = make_cart(store, clock, [PurchaseResult(success=False, error="nope")])
        with pytest.raises(ActionFailure):
            asyncio.run(cart.add_to_cart(product))
        assert store.get_product(product.id).monitor_state == MonitorState.ACTIVE

    def test_configure_from_settings(self, store, clock, product):
        cart, action = make_cart(store, clock, [PurchaseResult(success=False, error="nope")])
        cart.configure(Settings(add_to_cart_max_attempts=2, add_to_cart_base_delay_seconds=1))

        with pytest.raises(ActionFailure):
            asyncio.run(cart.add_to_cart(product))
        assert len(action.attempts) == 2
        assert clock.sleeps == [1.0]


class TestQuantity:
    """Tests for the requested quantity."""

    def test_uses_page_limit(self, store, clock, make_product):
        product = store.add_product(make_product(max_purchase_qty=4, max_quantity=2))
        cart, action = make_cart(store, clock, [PurchaseResult(success=True, quantity_requested=4)])
        asyncio.run(cart.add_to_cart(product))
        assert action.attempts == [(product.id, 4)]

    def test_falls_back_to_configured_quantity(self, store, clock, make_product):
        product = store.add_product(make_product(max_quantity=2))
        cart, action = make_cart(store, clock, [PurchaseResult(success=True, quantity_requested=2)])
        asyncio.run(cart.add_to_cart(product))
        assert action.attempts == [(product.id, 2)]

    def test_learns_page_limit(self, store, clock, product):
        cart, _ = make_cart(
            store,
            clock,
            [PurchaseResult(success=True, quantity_requested=1, page_max=3, warning="Limit reached")],
        )
        asyncio.run(cart.add_to_cart(product))

        assert store.get_product(product.id).max_purchase_qty == 3
        details = store.get_logs()[0].details
        assert "page max: 3" in details
        assert "Limit reached" in details
