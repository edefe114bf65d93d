"""Per-product monitor state, error counters and check eligibility."""

import logging
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

from .anti_detection import BackoffPolicy
from .models import MonitorState, Product, ProductUpdate, Settings
from .validity import ValidityClassifier, name_from_url

logger = logging.getLogger(__name__)

ELIGIBLE_STATES = (MonitorState.ACTIVE, MonitorState.ERROR)


class FailureKind(str, Enum):
    """Kind of failed check."""

    FETCH = "fetch"
    INVALID = "invalid"


class FailureOutcome(BaseModel):
    """What a failed check changes on the product."""

    updates: ProductUpdate
    error_count: int
    entered_error_state: bool = Field(default=False)
    page_gone: bool = Field(default=False, description="Junk-page threshold just reached")
    repaired_name: str | None = Field(default=None)


class ProductStateMachine:
    """Owns the monitor-state edges and the next-allowed-check gate.

    Edges:
        active -> error   failure count reaches ``error_state_threshold``
        error -> active   next valid check (see TransitionDetector)
        active/error -> paused, paused -> active   user action only
    """

    def __init__(
        self,
        backoff: BackoffPolicy | None = None,
        classifier: ValidityClassifier | None = None,
    ):
        self.backoff = backoff or BackoffPolicy()
        self.classifier = classifier or ValidityClassifier()

    # =========================================================================
    # Scheduling
    # =========================================================================

    @staticmethod
    def is_eligible(product: Product) -> bool:
        return product.monitor_state in ELIGIBLE_STATES

    def select_eligible(self, products: list[Product]) -> list[Product]:
        """Products that take part in a tick, in list order."""
        return [p for p in products if self.is_eligible(p)]

    def next_check_delay(self, product: Product, settings: Settings) -> timedelta:
        """Minimum spacing between checks for a product with errors."""
        if product.error_count <= 0:
            return timedelta(0)
        floor_ms = 0.0
        if product.monitor_state == MonitorState.ERROR:
            floor_ms = settings.error_state_floor_seconds * 1000
        delay_ms = max(self.backoff.delay_ms(product.error_count), floor_ms)
        return timedelta(milliseconds=delay_ms)

    def is_due(self, product: Product, settings: Settings, now: datetime) -> bool:
        """Check the backoff gate; products without errors are always due."""
        if product.error_count <= 0 or product.last_checked is None:
            return True
        return now - product.last_checked >= self.next_check_delay(product, settings)

    # =========================================================================
    # Outcomes
    # =========================================================================

    def record_failure(
        self,
        product: Product,
        kind: FailureKind,
        message: str,
        settings: Settings,
        now: datetime,
    ) -> FailureOutcome:
        """Compute the updates for a failed check.

        Stored price, stock status and image are left untouched. On a junk
        page the stored name is re-validated and replaced by a URL-derived
        name if it is itself junk.

        Args:
            product: Product as currently stored
            kind: Fetch failure or junk classification
            message: Error text stored in ``last_error``
            settings: Current thresholds
            now: Check timestamp

        Returns:
            FailureOutcome with updates and threshold flags
        """
        error_count = product.error_count + 1
        values: dict = {
            "last_checked": now,
            "error_count": error_count,
            "last_error": message,
        }

        entered_error = (
            product.monitor_state == MonitorState.ACTIVE
            and error_count >= settings.error_state_threshold
        )
        if entered_error:
            values["monitor_state"] = MonitorState.ERROR
            # A pause made while the check was in flight wins
            values["monitor_state_from"] = [MonitorState.ACTIVE]
            logger.warning(f"{product.name}: {error_count} consecutive failures, entering error state")

        repaired_name = None
        if kind == FailureKind.INVALID and not self.classifier.is_valid_record(product):
            repaired_name = name_from_url(product.url)
            values["name"] = repaired_name
            logger.info(f"Repaired stored name '{product.name}' -> '{repaired_name}'")

        return FailureOutcome(
            updates=ProductUpdate(**values),
            error_count=error_count,
            entered_error_state=entered_error,
            page_gone=kind == FailureKind.INVALID and error_count == settings.page_gone_threshold,
            repaired_name=repaired_name,
        )

    # =========================================================================
    # User actions
    # =========================================================================

    @staticmethod
    def pause() -> ProductUpdate:
        return ProductUpdate(monitor_state=MonitorState.PAUSED)

    @staticmethod
    def resume() -> ProductUpdate:
        return ProductUpdate(monitor_state=MonitorState.ACTIVE, error_count=0, last_error=None)

    def toggle(self, product: Product) -> ProductUpdate:
        """Flip between active and paused, resetting error counters."""
        if product.monitor_state == MonitorState.PAUSED:
            return self.resume()
        return ProductUpdate(monitor_state=MonitorState.PAUSED, error_count=0, last_error=None)
