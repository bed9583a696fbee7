"""
In-process price tick bus

Feeds publish PriceTick objects; consumers (stop-loss triggers) subscribe per
symbol. Callbacks are plain synchronous functions and must not block: anything
slow should be handed off with asyncio.create_task().
"""

import logging
from collections import defaultdict
from typing import Callable, Dict, List

from trader.schemas import PriceTick

logger = logging.getLogger(__name__)

TickCallback = Callable[[PriceTick], None]


class TickSubscription:
    """Handle returned by PriceTickBus.subscribe(); cancel() is idempotent"""

    def __init__(self, bus: "PriceTickBus", symbol: str, callback: TickCallback):
        self.bus = bus
        self.symbol = symbol
        self.callback = callback
        self.active = True

    def cancel(self) -> bool:
        """Unsubscribe. Returns True only for the call that actually removed it."""
        if not self.active:
            return False
        self.active = False
        self.bus._remove(self)
        return True


class PriceTickBus:
    """Publish/subscribe channel keyed by symbol"""

    def __init__(self):
        self._subscribers: Dict[str, List[TickSubscription]] = defaultdict(list)

    def subscribe(self, symbol: str, callback: TickCallback) -> TickSubscription:
        subscription = TickSubscription(self, symbol.upper(), callback)
        self._subscribers[subscription.symbol].append(subscription)
        logger.debug(f"Subscribed to {subscription.symbol} ticks ({len(self._subscribers[subscription.symbol])} total)")
        return subscription

    def publish(self, tick: PriceTick) -> int:
        """
        Deliver a tick to every subscriber of its symbol.

        Iterates over a snapshot so callbacks may unsubscribe themselves.
        A failing callback is logged and does not affect the others.

        Returns:
            Number of callbacks invoked
        """
        snapshot = list(self._subscribers.get(tick.symbol.upper(), ()))
        delivered = 0
        for subscription in snapshot:
            if not subscription.active:
                continue
            try:
                subscription.callback(tick)
                delivered += 1
            except Exception as e:
                logger.error(f"Tick callback failed for {tick.symbol}: {e}", exc_info=True)
        return delivered

    def subscriber_count(self, symbol: str) -> int:
        return len(self._subscribers.get(symbol.upper(), ()))

    def _remove(self, subscription: TickSubscription):
        subscribers = self._subscribers.get(subscription.symbol)
        if not subscribers:
            return
        try:
            subscribers.remove(subscription)
        except ValueError:
            return
        if not subscribers:
            del self._subscribers[subscription.symbol]
