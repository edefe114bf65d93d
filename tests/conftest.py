"""Shared fixtures and fakes for the stock monitor tests."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import pytest

from stock_monitor.errors import FetchFailure
from stock_monitor.models import Product, PurchaseResult, RawSnapshot, StockStatus
from stock_monitor.store import ProductStore

START = datetime(2024, 1, 1, 12, 0, 0)
PRODUCT_URL = "https://shop.example/product/lego-city-fire-truck-43718702"
IMAGE_URL = "https://cdn.example.com/images/fire-truck.jpg"


class FakeClock:
    """Wall clock, millisecond clock and sleep that share one timeline."""

    def __init__(self, start: datetime = START):
        self.start = start
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic_ms(self) -> float:
        return (self.current - self.start).total_seconds() * 1000

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class FakeSession:
    def __init__(self, fetcher: "FakeFetcher"):
        self.fetcher = fetcher

    async def fetch_snapshot(self, url: str) -> RawSnapshot:
        self.fetcher.fetched.append(url)
        await asyncio.sleep(0)
        if self.fetcher.on_fetch is not None:
            self.fetcher.on_fetch(url)
        result = self.fetcher.responses.get(url)
        if result is None:
            raise FetchFailure(f"No response for {url}")
        if isinstance(result, BaseException):
            raise result
        return result


class FakeFetcher:
    """PageFetcher serving canned snapshots or exceptions per URL."""

    def __init__(self, responses: dict | None = None):
        self.responses = responses or {}
        self.fetched: list[str] = []
        self.rotations = 0
        self.sessions_opened = 0
        self.sessions_closed = 0
        self.on_fetch = None

    @asynccontextmanager
    async def session(self):
        self.sessions_opened += 1
        try:
            yield FakeSession(self)
        finally:
            self.sessions_closed += 1

    def rotate_identity(self) -> str:
        self.rotations += 1
        return f"agent-{self.rotations}"


class RecordingNotifier:
    def __init__(self):
        self.calls: list[tuple] = []

    async def restocked(self, product):
        self.calls.append(("restocked", product.id))

    async def sold_out(self, product):
        self.calls.append(("sold_out", product.id))

    async def price_drop(self, product, old_price, new_price):
        self.calls.append(("price_drop", product.id, old_price, new_price))

    async def error(self, product, message):
        self.calls.append(("error", product.id, message))

    async def audio_alert(self, volume):
        self.calls.append(("audio_alert", volume))

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


class FakeWebhook:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent: list[tuple] = []

    async def send(self, url, event):
        self.sent.append((url, event))
        return self.ok


class FakePurchaseAction:
    """Returns queued results (or raises queued exceptions) per attempt."""

    def __init__(self, results: list | None = None):
        self.results = list(results or [PurchaseResult(success=True, quantity_requested=1)])
        self.attempts: list[tuple[str, int]] = []

    async def attempt(self, product, target_quantity):
        self.attempts.append((product.id, target_quantity))
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    """Create a store backed by a temporary YAML file."""
    return ProductStore(tmp_path / "stock_monitor.yaml")


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_snapshot():
    def factory(**overrides) -> RawSnapshot:
        values = {
            "name": "Lego City Fire Truck",
            "price": 24.99,
            "stock_status": StockStatus.IN_STOCK,
            "image_url": IMAGE_URL,
        }
        values.update(overrides)
        return RawSnapshot(**values)

    return factory


@pytest.fixture
def make_product():
    def factory(**overrides) -> Product:
        values = {
            "url": PRODUCT_URL,
            "name": "Lego City Fire Truck",
            "image_url": IMAGE_URL,
            "current_price": 29.99,
            "stock_status": StockStatus.OUT_OF_STOCK,
            "added_at": START,
        }
        values.update(overrides)
        return Product(**values)

    return factory
