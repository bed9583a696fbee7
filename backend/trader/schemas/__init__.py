"""Centralized Pydantic schemas for data crossing module boundaries"""

from .market import Candle, PriceTick, RateLimitBudget
from .order import OrderFill, OrderResult, OrderSide, OrderStatus
from .strategy import ActionType, StrategyAction, TradePlan

__all__ = [
    # Market schemas
    "Candle",
    "PriceTick",
    "RateLimitBudget",
    # Order schemas
    "OrderFill",
    "OrderResult",
    "OrderSide",
    "OrderStatus",
    # Strategy schemas
    "ActionType",
    "StrategyAction",
    "TradePlan",
]
