"""
Graceful Shutdown Manager

Counts order placements that are talking to the exchange right now, so a
stop signal never interrupts an order between "sent" and "recorded".
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


class ShutdownInProgressError(RuntimeError):
    """Raised when a new order is attempted after shutdown was requested"""


@dataclass
class ShutdownStatus:
    ready: bool
    in_flight_count: int
    waited_seconds: float
    message: str


class ShutdownManager:
    """
    Tracks in-flight order placements.

    Usage:
        async with shutdown_manager.order_in_flight():
            result = await trading_client.buy_stop_limit(...)

        status = await shutdown_manager.prepare_shutdown(timeout=30)
    """

    def __init__(self):
        self._shutting_down = False
        self._in_flight_count = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._requested_at: Optional[datetime] = None

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def in_flight_count(self) -> int:
        return self._in_flight_count

    @asynccontextmanager
    async def order_in_flight(self):
        """Mark an order placement for the duration of the block"""
        if self._shutting_down:
            raise ShutdownInProgressError("Cannot start new orders - shutdown in progress")

        self._in_flight_count += 1
        self._idle.clear()
        logger.debug(f"Placement started ({self._in_flight_count} in flight)")
        try:
            yield
        finally:
            self._in_flight_count = max(0, self._in_flight_count - 1)
            logger.debug(f"Placement finished ({self._in_flight_count} in flight)")
            if self._in_flight_count == 0:
                self._idle.set()

    async def prepare_shutdown(self, timeout: float = 60.0) -> ShutdownStatus:
        """
        Refuse new orders and wait for in-flight ones.

        Returns:
            ShutdownStatus; ready is False when orders were still in flight at the timeout
        """
        self._shutting_down = True
        self._requested_at = datetime.now(timezone.utc)

        if self._in_flight_count == 0:
            logger.info("No order placement in flight - ready for shutdown")
            return ShutdownStatus(True, 0, 0.0, "No in-flight orders - ready for shutdown")

        logger.info(f"Shutdown requested with {self._in_flight_count} placement(s) in flight, waiting up to {timeout}s")
        started = time.monotonic()
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ {self._in_flight_count} placement(s) still in flight after {timeout}s")
            return ShutdownStatus(
                False,
                self._in_flight_count,
                timeout,
                f"Timeout: {self._in_flight_count} orders still in-flight after {timeout}s",
            )

        waited = time.monotonic() - started
        logger.info(f"In-flight placements done after {waited:.1f}s")
        return ShutdownStatus(True, 0, waited, f"All orders completed after {waited:.1f}s - ready for shutdown")

    def cancel_shutdown(self):
        """Accept orders again"""
        self._shutting_down = False
        self._requested_at = None
        logger.info("Shutdown request withdrawn")

    def get_status(self) -> dict:
        return {
            "shutting_down": self._shutting_down,
            "in_flight_count": self._in_flight_count,
            "shutdown_requested_at": self._requested_at.isoformat() if self._requested_at else None,
        }


shutdown_manager = ShutdownManager()
