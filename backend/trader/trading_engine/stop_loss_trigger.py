"""
Event-driven stop-loss

Listens to live ticks for the campaign's symbol and fires the exit once when
the price trades at or below the stop. The exit itself runs as a task so the
tick publisher is never blocked by order placement.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from trader.exchange_clients.base import ExchangeGateway
from trader.price_feeds.base import TickSubscription
from trader.schemas import PriceTick
from trader.trading_engine.trade_context import TradeContext

logger = logging.getLogger(__name__)


class StopLossTrigger:
    """One-shot price trigger for one campaign position"""

    def __init__(self, ctx: TradeContext, stop_loss: float, on_trigger: Callable[[], Awaitable[Any]]):
        self.ctx = ctx
        self.stop_loss = stop_loss
        self.on_trigger = on_trigger
        self.fired = False
        self.subscription: Optional[TickSubscription] = None
        self.task: Optional[asyncio.Task] = None
        self.trigger_price: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self.subscription is not None and self.subscription.active and not self.fired

    def arm(self, exchange: ExchangeGateway) -> "StopLossTrigger":
        self.subscription = exchange.subscribe_price_ticks(self.ctx.symbol, self.on_tick)
        logger.info(f"[Stop Loss] [Campaign {self.ctx.campaign_id}] armed symbol={self.ctx.symbol} stopLoss={self.stop_loss}")
        return self

    def disarm(self):
        if self.subscription is not None and self.subscription.cancel():
            logger.info(f"[Stop Loss] [Campaign {self.ctx.campaign_id}] disarmed symbol={self.ctx.symbol}")

    def on_tick(self, tick: PriceTick):
        if self.fired:
            return
        if self.ctx.cancelled:
            self.disarm()
            return
        if tick.price > self.stop_loss:
            return

        # Set before anything can yield so a duplicate tick is a no-op
        self.fired = True
        self.trigger_price = tick.price
        self.disarm()
        logger.info(
            f"[Stop Loss] [Campaign {self.ctx.campaign_id}] 🔴 triggered symbol={tick.symbol} "
            f"price={tick.price} stopLoss={self.stop_loss}"
        )
        self.task = asyncio.create_task(self._fire())

    async def _fire(self):
        try:
            result = await self.on_trigger()
            logger.info(f"[Stop Loss] [Campaign {self.ctx.campaign_id}] exit result: {getattr(result, 'status', result)}")
            return result
        except Exception as e:
            logger.critical(
                f"[Stop Loss] [Campaign {self.ctx.campaign_id}] exit failed: {e} - operator must intervene",
                exc_info=True,
            )
            return None
