"""Exception types raised by the stock monitor."""


class MonitorError(Exception):
    """Base class for monitor errors."""


class FetchFailure(MonitorError):
    """The product page could not be fetched or rendered."""


class InvalidData(MonitorError):
    """The fetched page is a junk, error or bot-challenge page."""


class PersistenceFailure(MonitorError):
    """Reading from or writing to the store failed."""


class ActionFailure(MonitorError):
    """The purchase action failed after exhausting its retries."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class ProductNotFoundError(MonitorError):
    """No product with the requested id exists."""


class DuplicateProductError(MonitorError):
    """The product URL is already being monitored."""


class ProductLimitError(MonitorError):
    """The configured maximum number of products has been reached."""


class ImportFormatError(MonitorError):
    """An import bundle is missing required fields."""
