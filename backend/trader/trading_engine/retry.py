"""
Bounded retry with a fixed or exponential delay schedule.

Candle fetches, market exits and order watchers all retry transient
exchange failures. RetryPolicy keeps the attempt count and the delay
schedule in one value object so the schedule can be tested on its own.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from trader.exceptions import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry schedule.

    Attributes:
        max_attempts: Total attempts including the first one
        delay_seconds: Delay before the second attempt
        backoff: Multiplier applied per further attempt (1.0 = fixed delay)
        max_delay_seconds: Upper bound for any single delay
    """

    max_attempts: int
    delay_seconds: float
    backoff: float = 1.0
    max_delay_seconds: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")

    def delay_for(self, attempt: int) -> float:
        """
        Delay to wait after failed attempt number `attempt` (1-based).

        Examples:
            RetryPolicy(5, 0.5, backoff=2.0, max_delay_seconds=5.0)
            -> 0.5, 1.0, 2.0, 4.0, 5.0
        """
        delay = self.delay_seconds * (self.backoff ** max(attempt - 1, 0))
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        return delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    ) -> T:
        """
        Await `operation()` until it succeeds or attempts run out.

        Exceptions outside `retry_on` propagate immediately.

        Raises:
            RetryExhaustedError: chained to the last failure
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except retry_on as e:
                last_error = e
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}): {e}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)

        logger.error(f"❌ {description} failed after {self.max_attempts} attempt(s): {last_error}")
        raise RetryExhaustedError(description, self.max_attempts, last_error) from last_error
