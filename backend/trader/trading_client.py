"""
Position-oriented trading client wrapper

Wraps an ExchangeGateway with the few order shapes the campaign strategy
uses: a stop-limit entry sized from the campaign balance, a limit
take-profit, and a market exit. A position's buy and its exit share the
same client order id so they can be matched into a Trade later.
"""

import logging
import uuid
from typing import Optional

from trader.config import settings
from trader.currency_utils import get_quote_currency
from trader.exchange_clients.base import ExchangeGateway
from trader.schemas import OrderResult

logger = logging.getLogger(__name__)


class TradingClient:
    """
    Strategy-level order helpers

    Keeps sizing and client-id conventions out of the orchestrator.
    """

    def __init__(self, exchange: ExchangeGateway, buy_fee_buffer: Optional[float] = None):
        """
        Initialize with an exchange gateway

        Args:
            exchange: ExchangeGateway instance
            buy_fee_buffer: Share of the balance kept aside for fees (default from settings)
        """
        self.exchange = exchange
        self.buy_fee_buffer = settings.buy_fee_buffer if buy_fee_buffer is None else buy_fee_buffer

    async def get_quote_balance(self, symbol: str) -> float:
        """Free balance of the quote currency of a symbol"""
        return await self.exchange.get_balance(get_quote_currency(symbol))

    async def size_buy(self, symbol: str, balance: float, limit_price: float) -> float:
        """Base amount affordable with `balance` at `limit_price`, fees reserved, floored to the lot step"""
        if limit_price <= 0:
            raise ValueError(f"Invalid limit price {limit_price} for {symbol}")
        investable = balance * (1 - self.buy_fee_buffer)
        return await self.exchange.round_to_lot_size(symbol, investable / limit_price)

    async def buy_stop_limit(self, symbol: str, balance: float, limit_price: float) -> OrderResult:
        """
        Place the entry order

        A GTC stop-limit buy with stop = limit = entry price. It only
        triggers once the market trades up through the entry.

        Args:
            symbol: Exchange symbol
            balance: Quote balance available to the campaign
            limit_price: Entry price (already tick aligned)

        Returns:
            OrderResult (cancelled with a reason if the exchange rejected it)
        """
        amount = await self.size_buy(symbol, balance, limit_price)
        client_order_id = uuid.uuid4().hex

        logger.info(f"Placing stop-limit buy: {amount} {symbol} @ {limit_price} (clientOrderId={client_order_id})")
        return await self.exchange.place_order(
            side="buy",
            symbol=symbol,
            amount=amount,
            price=limit_price,
            order_type="STOP_LOSS_LIMIT",
            stop_price=limit_price,
            time_in_force="GTC",
            client_order_id=client_order_id,
        )

    async def sell_limit(self, symbol: str, amount: float, limit_price: float, client_order_id: str) -> OrderResult:
        """Take-profit: GTC limit sell reusing the position's client order id"""
        logger.info(f"Placing limit sell: {amount} {symbol} @ {limit_price} (clientOrderId={client_order_id})")
        return await self.exchange.place_order(
            side="sell",
            symbol=symbol,
            amount=amount,
            price=limit_price,
            order_type="LIMIT",
            time_in_force="GTC",
            client_order_id=client_order_id,
        )

    async def sell_market(self, symbol: str, amount: float, client_order_id: str) -> OrderResult:
        """Exit the whole position at market, reusing the position's client order id"""
        logger.info(f"Placing market sell: {amount} {symbol} (clientOrderId={client_order_id})")
        return await self.exchange.place_order(
            side="sell",
            symbol=symbol,
            amount=amount,
            order_type="MARKET",
            client_order_id=client_order_id,
        )

    async def cancel_order(self, order: OrderResult) -> OrderResult:
        logger.info(f"Cancelling {order.side} order {order.order_id} on {order.symbol}")
        return await self.exchange.cancel_order(order.symbol, order.order_id, order.client_order_id)
