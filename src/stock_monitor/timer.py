"""Periodic alarm driving the monitor tick."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .models import Settings
from .state_machine import ProductStateMachine
from .store import ProductStore

logger = logging.getLogger(__name__)

MIN_PERIOD_SECONDS = 10.0
INITIAL_DELAY_SECONDS = 3.0
# Period changes smaller than this keep the running alarm
PERIOD_TOLERANCE_SECONDS = 0.6


class AsyncioAlarm:
    """Repeating alarm on the running event loop.

    Each firing starts the callback as its own task, so a slow callback does
    not delay the next firing; overlapping runs are the callback's concern.
    """

    def __init__(self, callback: Callable[[], Awaitable[None]]):
        self.callback = callback
        self.period: float | None = None
        self._task: asyncio.Task | None = None
        self._running: set[asyncio.Task] = set()

    @property
    def is_armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, period_seconds: float, initial_delay: float = INITIAL_DELAY_SECONDS) -> None:
        """(Re)start the alarm with a new period."""
        self.disarm()
        self.period = period_seconds
        self._task = asyncio.get_running_loop().create_task(self._run(period_seconds, initial_delay))
        logger.info(f"Alarm armed: every {period_seconds:g}s")

    def disarm(self) -> None:
        if self._task is not None:
            self._task.cancel()
            logger.info("Alarm cleared")
        self._task = None
        self.period = None

    async def _run(self, period: float, initial_delay: float) -> None:
        await asyncio.sleep(initial_delay)
        while True:
            task = asyncio.create_task(self.callback())
            self._running.add(task)
            task.add_done_callback(self._finished)
            await asyncio.sleep(period)

    def _finished(self, task: asyncio.Task) -> None:
        self._running.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Alarm callback failed: {error}", exc_info=error)

    async def drain(self) -> None:
        """Wait for callbacks already started to finish."""
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)


class AlarmController:
    """Keeps the alarm period in line with settings and product eligibility."""

    def __init__(self, alarm: AsyncioAlarm, state_machine: ProductStateMachine | None = None):
        self.alarm = alarm
        self.state_machine = state_machine or ProductStateMachine()

    @staticmethod
    def period_for(settings: Settings) -> float:
        return max(settings.check_interval_seconds, MIN_PERIOD_SECONDS)

    def ensure_running(self, store: ProductStore) -> bool:
        """Arm, re-arm or clear the alarm.

        Returns:
            True if the alarm is armed afterwards
        """
        products = store.load_products()
        if not self.state_machine.select_eligible(products):
            if self.alarm.is_armed:
                self.alarm.disarm()
            return False

        period = self.period_for(store.load_settings())
        current = self.alarm.period
        if (
            not self.alarm.is_armed
            or current is None
            or abs(current - period) > PERIOD_TOLERANCE_SECONDS
        ):
            self.alarm.arm(period)
        return True

    def stop(self) -> None:
        self.alarm.disarm()
