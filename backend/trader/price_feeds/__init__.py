"""
Price Feeds Module

Live prices for event-driven triggers.

Components:
- PriceTickBus: in-process publish/subscribe keyed by symbol
- TickSubscription: cancellable handle returned by subscribe()
- BinanceTickerFeed: websocket mini ticker stream publishing onto a bus
"""

from trader.price_feeds.base import PriceTickBus, TickSubscription
from trader.price_feeds.binance_feed import BinanceTickerFeed

__all__ = [
    "PriceTickBus",
    "TickSubscription",
    "BinanceTickerFeed",
]
