"""
Database Models

All model classes are re-exported here:
    from trader.models import Campaign, Order, Trade, Event
"""

from trader.database import Base  # noqa: F401  (re-exported for tests)
from trader.models.trading import Campaign, Event, Order, Trade

__all__ = [
    "Base",
    "Campaign",
    "Order",
    "Trade",
    "Event",
]
