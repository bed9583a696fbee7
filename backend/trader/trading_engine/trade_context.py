"""
Trade context dataclass: bundles the parameters threaded through every
order operation of one campaign run.
"""

import asyncio
from dataclasses import dataclass, field

from trader.strategies import TradingStrategy


@dataclass
class TradeContext:
    """Common parameters for order lifecycle operations."""
    campaign_id: int
    symbol: str
    strategy: TradingStrategy
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)  # Set when the campaign is stopped

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()
