"""Order-related Pydantic schemas

OrderResult is the normalized order record. Exchange clients build it from
their raw payloads; nothing past the gateway looks at exchange JSON.
"""

from datetime import datetime
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, field_validator, model_validator

OrderSideType = Literal["buy", "sell"]
OrderStatusType = Literal["placed", "filled", "cancelled"]


class OrderSide:
    BUY = "buy"
    SELL = "sell"


class OrderStatus:
    PLACED = "placed"
    FILLED = "filled"
    CANCELLED = "cancelled"


class OrderFill(BaseModel):
    trade_id: str
    price: float
    amount: float
    fee: float = 0.0  # Converted to the quote currency
    fee_asset: str = ""
    filled_at: Optional[datetime] = None
    is_maker: bool = False

    @field_validator("trade_id", mode="before")
    @classmethod
    def coerce_trade_id(cls, v):
        return "" if v is None else str(v)


class OrderResult(BaseModel):
    order_id: str = ""
    client_order_id: str = ""
    symbol: str
    side: OrderSideType
    status: OrderStatusType
    order_price: float = 0.0
    executed_price: float = 0.0
    order_amount: float = 0.0
    executed_amount: float = 0.0
    remaining_amount: float = 0.0
    fee: float = 0.0
    trades: List[OrderFill] = []
    cash_amount: float = 0.0  # Excludes fees
    total: float = 0.0  # Cash paid (buy) or received (sell), fees included
    submitted_at: Optional[datetime] = None
    filled_at: Optional[datetime] = None
    reason: str = ""

    @field_validator("order_id", "client_order_id", mode="before")
    @classmethod
    def normalize_id(cls, v):
        return "" if v is None else str(v)

    @field_validator("reason", mode="before")
    @classmethod
    def normalize_reason(cls, v):
        return v or ""

    @model_validator(mode="after")
    def recompute_remaining(self):
        self.remaining_amount = max(self.order_amount - self.executed_amount, 0.0)
        return self

    @property
    def dedup_key(self) -> Tuple[str, str, str, str]:
        return (self.order_id, self.client_order_id, self.side, self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.FILLED, OrderStatus.CANCELLED)

    @property
    def is_placed(self) -> bool:
        return self.status == OrderStatus.PLACED

    @property
    def is_filled(self) -> bool:
        return self.status == OrderStatus.FILLED

    @property
    def is_cancelled(self) -> bool:
        return self.status == OrderStatus.CANCELLED
