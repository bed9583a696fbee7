"""
Binance spot REST client

Implements ExchangeGateway over the Binance /api/v3 endpoints with httpx.
Signed endpoints use HMAC-SHA256 over the query string. Every response's
X-MBX-USED-WEIGHT-1M header is recorded so order watchers can pace their
polling against the shared request-weight budget.

Filter failures (-1013, LOT_SIZE, PRICE_FILTER):
https://binance-docs.github.io/apidocs/spot/en/#filters
"""

import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from trader.currency_utils import split_symbol
from trader.exceptions import ExchangeError, RateLimitError
from trader.exchange_clients.base import ExchangeGateway
from trader.precision import floor_to_increment, format_amount, round_money
from trader.price_feeds.base import PriceTickBus, TickCallback, TickSubscription
from trader.schemas import Candle, OrderFill, OrderResult, RateLimitBudget

logger = logging.getLogger(__name__)

DEFAULT_WEIGHT_LIMIT = 6000  # REQUEST_WEIGHT per minute until exchangeInfo says otherwise

CANCELLED_STATUSES = {"CANCELED", "PENDING_CANCEL", "REJECTED", "EXPIRED", "EXPIRED_IN_MATCH"}

CANCEL_REASONS = {
    "CANCELED": "The order has been canceled by the user.",
    "PENDING_CANCEL": "The order is being canceled.",
    "REJECTED": "Rejected - The order was not accepted by the engine and not processed.",
    "EXPIRED": (
        "The order was canceled according to the order type's rules "
        "(e.g. LIMIT FOK orders with no fill, LIMIT IOC or MARKET orders that partially fill) "
        "or by the exchange (e.g. orders canceled during liquidation or maintenance)"
    ),
    "EXPIRED_IN_MATCH": "The order was expired by the exchange due to self-trade prevention.",
}


def _ms_to_datetime(value: Any) -> Optional[datetime]:
    if value in (None, 0, "0"):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def normalize_order(raw: Dict[str, Any]) -> OrderResult:
    """
    Map a Binance order payload onto OrderResult (no fills, no totals).

    CANCELED/PENDING_CANCEL/REJECTED/EXPIRED -> cancelled, FILLED -> filled,
    everything else (NEW, PARTIALLY_FILLED) -> placed.
    """
    exchange_status = raw.get("status", "")
    if exchange_status in CANCELLED_STATUSES:
        status = "cancelled"
    elif exchange_status == "FILLED":
        status = "filled"
    else:
        status = "placed"

    order_price = float(raw.get("price") or 0)
    submitted_at = _ms_to_datetime(raw.get("time") or raw.get("transactTime"))
    filled_at = None
    if status == "filled":
        filled_at = _ms_to_datetime(raw.get("updateTime") or raw.get("transactTime"))

    return OrderResult(
        order_id=raw.get("orderId"),
        client_order_id=raw.get("clientOrderId"),
        symbol=raw.get("symbol", ""),
        side=str(raw.get("side", "")).lower(),
        status=status,
        order_price=order_price,
        order_amount=float(raw.get("origQty") or 0),
        executed_amount=float(raw.get("executedQty") or 0),
        submitted_at=submitted_at,
        filled_at=filled_at,
        reason=CANCEL_REASONS.get(exchange_status, "") if status == "cancelled" else "",
    )


def weighted_price(fills: List[OrderFill]) -> float:
    amount = sum(f.amount for f in fills)
    if amount <= 0:
        return 0.0
    return sum(f.price * f.amount for f in fills) / amount


class BinanceClient(ExchangeGateway):
    """
    Binance spot client

    Exchange filters are fetched once per symbol and cached for the process
    lifetime. The client opens one httpx.AsyncClient per request.
    """

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        base_url: str = "https://api.binance.com",
        tick_bus: Optional[PriceTickBus] = None,
        timeout: float = 30.0,
        recv_window: int = 5000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.tick_bus = tick_bus
        self.timeout = timeout
        self.recv_window = recv_window
        self._transport = transport
        self._filters: Dict[str, Dict[str, float]] = {}

        self._used_weight = 0
        self._weight_limit = DEFAULT_WEIGHT_LIMIT
        self._weight_minute: Optional[int] = None

    # ========================================
    # HTTP
    # ========================================

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        signed = dict(params)
        signed["timestamp"] = int(time.time() * 1000)
        signed["recvWindow"] = self.recv_window
        query = urlencode(signed)
        signed["signature"] = hmac.new(
            self.api_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return signed

    def _record_weight(self, response: httpx.Response):
        used = response.headers.get("X-MBX-USED-WEIGHT-1M")
        if used is None:
            return
        try:
            self._used_weight = int(used)
        except ValueError:
            return
        self._weight_minute = int(time.time() // 60)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        """
        Perform one REST call

        Raises:
            RateLimitError: HTTP 418/429
            ExchangeError: any other HTTP error or transport failure
        """
        params = {k: v for k, v in (params or {}).items() if v is not None}
        if signed:
            params = self._sign(params)

        headers = {"X-MBX-APIKEY": self.api_key} if self.api_key else {}

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(method, path, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise ExchangeError(f"{method} {path} failed: {e}") from e

        self._record_weight(response)

        if response.status_code in (418, 429):
            retry_after = response.headers.get("Retry-After")
            logger.warning(f"⚠️  Rate limited ({response.status_code}) on {method} {path}, retry after {retry_after}s")
            raise RateLimitError(
                f"Rate limited on {method} {path}",
                retry_after=float(retry_after) if retry_after else None,
            )

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {"msg": response.text}
            message = body.get("msg") or response.text
            logger.error(f"❌ Binance API error {response.status_code} on {method} {path}: {body}")
            raise ExchangeError(message, code=body.get("code"))

        return response.json()

    # ========================================
    # RATE LIMIT
    # ========================================

    def remaining_rate_limit_budget(self) -> RateLimitBudget:
        now = time.time()
        current_minute = int(now // 60)
        used = self._used_weight if self._weight_minute == current_minute else 0
        return RateLimitBudget(used=used, limit=self._weight_limit, reset_in_seconds=60 - (now % 60))

    # ========================================
    # PRECISION
    # ========================================

    async def _get_filters(self, symbol: str) -> Dict[str, float]:
        if symbol in self._filters:
            return self._filters[symbol]

        info = await self._request("GET", "/api/v3/exchangeInfo", {"symbol": symbol})

        for rate_limit in info.get("rateLimits", []):
            if rate_limit.get("rateLimitType") == "REQUEST_WEIGHT" and rate_limit.get("interval") == "MINUTE":
                self._weight_limit = int(rate_limit.get("limit", DEFAULT_WEIGHT_LIMIT))

        symbols = info.get("symbols", [])
        if not symbols:
            raise ExchangeError(f"Unknown symbol {symbol}")

        filters = {"tick_size": 0.0, "step_size": 0.0, "min_notional": 0.0}
        for f in symbols[0].get("filters", []):
            filter_type = f.get("filterType")
            if filter_type == "PRICE_FILTER":
                filters["tick_size"] = float(f["tickSize"])
            elif filter_type == "LOT_SIZE":
                filters["step_size"] = float(f["stepSize"])
            elif filter_type in ("NOTIONAL", "MIN_NOTIONAL"):
                filters["min_notional"] = float(f.get("minNotional", 0))

        self._filters[symbol] = filters
        logger.info(f"Loaded filters for {symbol}: {filters}")
        return filters

    async def get_tick_size(self, symbol: str) -> float:
        return (await self._get_filters(symbol))["tick_size"]

    async def get_lot_step(self, symbol: str) -> float:
        return (await self._get_filters(symbol))["step_size"]

    async def get_min_notional(self, symbol: str) -> float:
        return (await self._get_filters(symbol))["min_notional"]

    async def round_to_tick(self, symbol: str, price: float) -> float:
        return floor_to_increment(price, await self.get_tick_size(symbol))

    async def round_to_lot_size(self, symbol: str, amount: float) -> float:
        return floor_to_increment(amount, await self.get_lot_step(symbol))

    # ========================================
    # MARKET DATA
    # ========================================

    async def get_candles(
        self,
        symbol: str,
        interval: str,
        start_time: datetime,
        end_time: datetime,
        limit: int = 1000,
    ) -> List[Candle]:
        rows = await self._request(
            "GET",
            "/api/v3/klines",
            {
                "symbol": symbol,
                "interval": interval,
                "startTime": _to_ms(start_time),
                "endTime": _to_ms(end_time),
                "limit": limit,
            },
        )
        return [
            Candle(
                open_time=_ms_to_datetime(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
                close_time=_ms_to_datetime(row[6]),
            )
            for row in rows
        ]

    async def get_average_price(self, symbol: str) -> float:
        data = await self._request("GET", "/api/v3/avgPrice", {"symbol": symbol})
        return float(data["price"])

    def subscribe_price_ticks(self, symbol: str, callback: TickCallback) -> TickSubscription:
        if self.tick_bus is None:
            raise ExchangeError("No price tick bus attached to the Binance client")
        return self.tick_bus.subscribe(symbol, callback)

    # ========================================
    # ACCOUNT
    # ========================================

    async def get_balance(self, asset: str) -> float:
        account = await self._request("GET", "/api/v3/account", signed=True)
        for balance in account.get("balances", []):
            if balance.get("asset") == asset:
                return float(balance.get("free", 0))
        return 0.0

    # ========================================
    # ORDERS
    # ========================================

    async def get_fills(self, symbol: str, order_id: str) -> List[OrderFill]:
        """Executions of one order with fees converted to the quote currency"""
        rows = await self._request("GET", "/api/v3/myTrades", {"symbol": symbol, "orderId": order_id}, signed=True)
        base, quote = split_symbol(symbol)

        fills = []
        for row in rows:
            price = float(row["price"])
            commission = float(row.get("commission") or 0)
            commission_asset = row.get("commissionAsset", quote)

            if commission == 0 or commission_asset == quote:
                fee = commission
            elif commission_asset == base:
                fee = commission * price
            else:
                # Fee paid in a third asset (BNB discount)
                fee = commission * await self.get_average_price(f"{commission_asset}{quote}")

            fills.append(
                OrderFill(
                    trade_id=row.get("id"),
                    price=price,
                    amount=float(row["qty"]),
                    fee=fee,
                    fee_asset=commission_asset,
                    filled_at=_ms_to_datetime(row.get("time")),
                    is_maker=bool(row.get("isMaker", False)),
                )
            )
        return fills

    async def _structure_order(self, raw: Dict[str, Any]) -> OrderResult:
        """Normalize and, for orders with executions, attach fills and totals"""
        order = normalize_order(raw)
        if order.executed_amount <= 0 or not order.order_id:
            return order

        fills = await self.get_fills(order.symbol, order.order_id)
        if not fills:
            return order

        executed_price = weighted_price(fills)
        fee = sum(f.fee for f in fills)
        cash_amount = executed_price * order.executed_amount
        total = cash_amount + fee if order.side == "buy" else cash_amount - fee

        filled_at = order.filled_at
        if order.is_filled and filled_at is None:
            filled_at = max((f.filled_at for f in fills if f.filled_at), default=None)

        return order.model_copy(
            update={
                "trades": fills,
                "executed_price": executed_price,
                "order_price": order.order_price or fills[0].price,
                "fee": round_money(fee),
                "cash_amount": cash_amount,
                "total": round_money(total),
                "filled_at": filled_at,
            }
        )

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
        filters = await self._get_filters(symbol)
        params = {
            "symbol": symbol,
            "side": side.upper(),
            "type": order_type,
            "quantity": format_amount(amount, filters["step_size"]),
            "price": format_amount(price, filters["tick_size"]) if price else None,
            "stopPrice": format_amount(stop_price, filters["tick_size"]) if stop_price else None,
            "timeInForce": time_in_force,
            "newClientOrderId": client_order_id,
            "newOrderRespType": "FULL",
        }

        try:
            raw = await self._request("POST", "/api/v3/order", params, signed=True)
        except ExchangeError as e:
            # Transport failures and rate limits carry no exchange code; only rejections normalize
            if e.exchange_code is None:
                raise
            logger.warning(f"Order rejected: {side} {amount} {symbol} @ {price} ({order_type}): {e.message}")
            return OrderResult(
                client_order_id=client_order_id,
                symbol=symbol,
                side=side,
                status="cancelled",
                order_price=price or 0.0,
                order_amount=amount,
                submitted_at=datetime.now(timezone.utc),
                reason=e.message,
            )

        # Stop orders come back as NEW with no price details; read them back
        if order_type == "STOP_LOSS_LIMIT":
            return await self.get_order(symbol, str(raw["orderId"]))

        return await self._structure_order(raw)

    async def get_order(self, symbol: str, order_id: str, client_order_id: str = "") -> OrderResult:
        params = {"symbol": symbol}
        if order_id:
            params["orderId"] = order_id
        else:
            params["origClientOrderId"] = client_order_id
        raw = await self._request("GET", "/api/v3/order", params, signed=True)
        return await self._structure_order(raw)

    async def cancel_order(self, symbol: str, order_id: str, client_order_id: str = "") -> OrderResult:
        params = {"symbol": symbol, "orderId": order_id or None}
        if not order_id:
            params["origClientOrderId"] = client_order_id
        raw = await self._request("DELETE", "/api/v3/order", params, signed=True)
        return await self._structure_order(raw)
