"""
ExchangeGateway Abstract Base Class

This module defines the interface the trading core uses to talk to an exchange.
Everything crossing this boundary is normalized: orders come back as
OrderResult, candles as Candle, rate-limit state as RateLimitBudget. The
signal engine and the order orchestrator never see raw exchange payloads.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from trader.price_feeds.base import TickCallback, TickSubscription
from trader.schemas import Candle, OrderResult, RateLimitBudget


class ExchangeGateway(ABC):
    """
    Abstract base class for exchange clients.

    Design Philosophy:
    - Placement failures the exchange reports are returned as a `cancelled`
      OrderResult carrying the exchange message in `reason`, not raised
    - Network and rate-limit failures raise ExchangeError / RateLimitError
      so the caller's retry policy can decide
    - Prices and amounts are floats in quote / base currency
    """

    # ========================================
    # ORDER METHODS
    # ========================================

    @abstractmethod
    async def place_order(
        self,
        side: str,
        symbol: str,
        amount: float,
        price: Optional[float] = None,
        order_type: str = "LIMIT",
        stop_price: Optional[float] = None,
        time_in_force: Optional[str] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        """
        Place an order.

        Args:
            side: "buy" or "sell"
            symbol: Exchange symbol (e.g. "BTCUSDT")
            amount: Base currency quantity (aligned to the lot step by the client)
            price: Limit price; None for market orders
            order_type: "LIMIT", "MARKET", "STOP_LOSS_LIMIT"
            stop_price: Trigger price for stop orders
            time_in_force: "GTC", "IOC", ...
            client_order_id: Caller-chosen id shared by a position's buy and sell

        Returns:
            Normalized OrderResult; a rejected order has status "cancelled"
        """
        pass

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str, client_order_id: str = "") -> OrderResult:
        """Cancel an open order and return its final state."""
        pass

    @abstractmethod
    async def get_order(self, symbol: str, order_id: str, client_order_id: str = "") -> OrderResult:
        """
        Get current order status.

        Returns:
            OrderResult including fills, executed price, fees and totals
        """
        pass

    # ========================================
    # MARKET DATA METHODS
    # ========================================

    @abstractmethod
    async def get_candles(
        self,
        symbol: str,
        interval: str,
        start_time: datetime,
        end_time: datetime,
        limit: int = 1000,
    ) -> List[Candle]:
        """
        Get historical candles, oldest first.

        The last candle may still be open; callers filter with Candle.is_closed().
        """
        pass

    @abstractmethod
    def subscribe_price_ticks(self, symbol: str, callback: TickCallback) -> TickSubscription:
        """Register a callback for live ticks of one symbol."""
        pass

    @abstractmethod
    def remaining_rate_limit_budget(self) -> RateLimitBudget:
        """Request weight used/allowed in the current window. Never makes a request."""
        pass

    # ========================================
    # PRECISION METHODS
    # ========================================

    @abstractmethod
    async def get_tick_size(self, symbol: str) -> float:
        """Minimum price increment for a symbol."""
        pass

    @abstractmethod
    async def get_min_notional(self, symbol: str) -> float:
        """Smallest order value (in the quote currency) the exchange accepts for a symbol."""
        pass

    @abstractmethod
    async def round_to_tick(self, symbol: str, price: float) -> float:
        """Floor a price to the symbol's tick size."""
        pass

    @abstractmethod
    async def round_to_lot_size(self, symbol: str, amount: float) -> float:
        """Floor a quantity to the symbol's lot step."""
        pass

    # ========================================
    # ACCOUNT METHODS
    # ========================================

    @abstractmethod
    async def get_balance(self, asset: str) -> float:
        """Free balance of one asset."""
        pass

    def get_exchange_name(self) -> str:
        return self.__class__.__name__
