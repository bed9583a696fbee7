"""
Binance live ticker feed

Reads the all-market mini ticker stream and republishes one PriceTick per
symbol on a PriceTickBus. Reconnects forever; a dropped socket only delays
stop-loss triggers, it never stops them.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import websockets

from trader.price_feeds.base import PriceTickBus
from trader.schemas import PriceTick

logger = logging.getLogger(__name__)

MINI_TICKER_STREAM = "!miniTicker@arr"


def parse_mini_tickers(message: Any) -> List[PriceTick]:
    """
    Convert one stream message into ticks.

    Accepts both the raw array form (/ws/!miniTicker@arr) and the combined
    stream envelope ({"stream": ..., "data": [...]}). Entries without a
    symbol or a parseable close price are skipped.
    """
    data = message.get("data") if isinstance(message, dict) else message
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []

    ticks = []
    for entry in data:
        symbol = entry.get("s")
        close = entry.get("c")
        if not symbol or close is None:
            continue
        try:
            price = float(close)
        except (TypeError, ValueError):
            continue
        event_time = entry.get("E")
        when = (
            datetime.fromtimestamp(event_time / 1000, tz=timezone.utc)
            if isinstance(event_time, (int, float))
            else datetime.now(timezone.utc)
        )
        ticks.append(PriceTick(symbol=symbol, price=price, time=when))
    return ticks


class BinanceTickerFeed:
    """
    Background service publishing Binance mini ticker prices

    start()/stop() follow the other background monitors: a single task,
    cancelled and awaited on stop.
    """

    def __init__(self, bus: PriceTickBus, stream_url: str, reconnect_delay: float = 2.0):
        """
        Initialize the feed

        Args:
            bus: Bus the ticks are published on
            stream_url: Websocket base, e.g. wss://stream.binance.com:9443
            reconnect_delay: Seconds to wait after a connection error
        """
        self.bus = bus
        self.url = f"{stream_url.rstrip('/')}/ws/{MINI_TICKER_STREAM}"
        self.reconnect_delay = reconnect_delay
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self.last_prices: Dict[str, float] = {}

    async def start(self):
        """Start streaming"""
        if self.running:
            logger.warning("Ticker feed already running")
            return

        self.running = True
        self._task = asyncio.create_task(self._stream_loop())
        logger.info(f"📡 Ticker feed started ({self.url})")

    async def stop(self):
        """Stop streaming"""
        if not self.running:
            return

        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Ticker feed stopped")

    def handle_message(self, raw: str) -> int:
        """Publish every tick in a raw websocket message; returns the tick count"""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed ticker message: {raw[:200]}")
            return 0

        ticks = parse_mini_tickers(message)
        for tick in ticks:
            self.last_prices[tick.symbol] = tick.price
            self.bus.publish(tick)
        return len(ticks)

    async def _stream_loop(self):
        """Main streaming loop"""
        while self.running:
            try:
                async with websockets.connect(self.url, ping_interval=20, ping_timeout=20) as ws:
                    logger.info("Ticker websocket connected")
                    async for raw in ws:
                        self.handle_message(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Ticker websocket error: {e}")

            if self.running:
                await asyncio.sleep(self.reconnect_delay)
