"""
Domain exceptions for the trader.

Components raise these instead of bare Exception so callers can tell a
transient exchange failure from a broken contract. The campaign loop and
the order watchers decide what is retried based on these types.
"""

from typing import Optional


class TraderError(Exception):
    """Base trader error with a machine-readable code."""

    def __init__(self, message: str, code: str = "trader_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class ExchangeError(TraderError):
    """The exchange rejected or failed a request."""

    def __init__(self, message: str = "Exchange request failed", code: Optional[int] = None):
        self.exchange_code = code
        super().__init__(message, code="exchange_error")


class RateLimitError(ExchangeError):
    """Too many requests (HTTP 418/429)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)
        self.code = "rate_limited"


class InvalidTransitionError(TraderError):
    """An order update arrived that the signal engine has no transition for."""

    def __init__(self, side: str, status: str):
        self.side = side
        self.status = status
        super().__init__(f"Invalid order status transition side={side!r} status={status!r}", code="invalid_transition")


class NoStrategyFoundError(TraderError):
    """None of the candidate pairs produced a runnable strategy today."""

    def __init__(self, message: str = "No strategy found"):
        super().__init__(message, code="no_strategy")


class CampaignNotFoundError(TraderError):
    """Campaign id is missing from the ledger."""

    def __init__(self, campaign_id: int):
        self.campaign_id = campaign_id
        super().__init__(f"Campaign {campaign_id} not found", code="not_found")


class RetryExhaustedError(TraderError):
    """A retried operation failed on every attempt."""

    def __init__(self, description: str, attempts: int, last_error: Optional[BaseException] = None):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{description} failed after {attempts} attempt(s): {last_error}",
            code="retry_exhausted",
        )
