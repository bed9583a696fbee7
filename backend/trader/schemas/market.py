"""Market data Pydantic schemas"""

from datetime import datetime

from pydantic import BaseModel


class Candle(BaseModel):
    open_time: datetime
    close_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    class Config:
        frozen = True

    def is_closed(self, now: datetime) -> bool:
        """A candle whose close time is still in the future is live"""
        return self.close_time <= now


class PriceTick(BaseModel):
    symbol: str
    price: float
    time: datetime


class RateLimitBudget(BaseModel):
    """Request weight consumed in the exchange's current window"""

    used: int = 0
    limit: int = 0
    reset_in_seconds: float = 60.0

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    @property
    def ratio_remaining(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.remaining / self.limit
