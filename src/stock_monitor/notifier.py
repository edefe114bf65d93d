"""User-facing alerts."""

import logging
import sys
from typing import Protocol, TextIO

from .models import Product

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Receives restock, sell-out, price-drop and error alerts."""

    async def restocked(self, product: Product) -> None:
        ...

    async def sold_out(self, product: Product) -> None:
        ...

    async def price_drop(self, product: Product, old_price: float, new_price: float) -> None:
        ...

    async def error(self, product: Product, message: str) -> None:
        ...

    async def audio_alert(self, volume: float) -> None:
        ...


class ConsoleNotifier:
    """Writes alerts to a terminal stream and the log."""

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream or sys.stdout

    def _show(self, title: str, message: str) -> None:
        logger.warning(f"{title} {message}")
        print(f"[{title}] {message}", file=self.stream, flush=True)

    async def restocked(self, product: Product) -> None:
        self._show(
            "Back in Stock!",
            f"{product.name} is now available at ${product.current_price:.2f} - {product.url}",
        )

    async def sold_out(self, product: Product) -> None:
        self._show("Sold Out", f"{product.name} is now out of stock")

    async def price_drop(self, product: Product, old_price: float, new_price: float) -> None:
        drop_pct = (old_price - new_price) / old_price * 100 if old_price else 0
        self._show(
            "Price Drop!",
            f"{product.name}: ${old_price:.2f} -> ${new_price:.2f} (-{drop_pct:.1f}%) - {product.url}",
        )

    async def error(self, product: Product, message: str) -> None:
        self._show("Monitor Error", f"{product.name}: {message}")

    async def audio_alert(self, volume: float) -> None:
        # Terminal bell; volume has no effect on a console
        if volume > 0:
            print("\a", end="", file=self.stream, flush=True)
