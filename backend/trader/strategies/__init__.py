"""
Trading Strategy Framework

This module provides the signal engine base class and a registry keyed by
the campaign's strategy_name. Each strategy owns its candle window and its
own state machine; the order orchestrator only talks to it through
set_order_status().
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from trader.exchange_clients.base import ExchangeGateway
from trader.schemas import OrderResult, StrategyAction, TradePlan


class StrategyParameter(BaseModel):
    """One tunable input of a strategy"""

    name: str
    description: str
    type: str  # "float", "int"
    default: Any


class StrategyDefinition(BaseModel):
    """Strategy id, display name and parameters"""

    id: str  # Unique identifier (e.g., "rsi_over_sma")
    name: str  # Display name
    description: str
    parameters: List[StrategyParameter]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TradingStrategy(ABC):
    """
    Base class for signal engines.

    Each strategy must implement:
    - get_definition(): describe the strategy and its parameters
    - init(): Load whatever the strategy needs before it can run
    - run(): Decide the next action for the newest closed candle
    - set_order_status(): Follow order transitions reported by the orchestrator
    - restore(): Re-enter the state implied by a persisted open order
    """

    def __init__(
        self,
        exchange: ExchangeGateway,
        symbol: str,
        start_time: datetime,
        end_time: datetime,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize strategy

        Args:
            exchange: Gateway used for candles and precision
            symbol: Exchange symbol this instance trades
            start_time: Start of the strategy window (UTC)
            end_time: End of the strategy window (UTC); no new entries after it
            config: Dictionary of strategy-specific parameters
            clock: Returns the current aware UTC time
        """
        self.exchange = exchange
        self.symbol = symbol
        self.start_time = start_time
        self.end_time = end_time
        self.config = self.apply_defaults(config or {})
        self.clock = clock
        self.validate_config()

    @classmethod
    @abstractmethod
    def get_definition(cls) -> StrategyDefinition:
        """Describe the strategy and its tunable parameters"""
        pass

    @classmethod
    def apply_defaults(cls, config: Dict[str, Any]) -> Dict[str, Any]:
        merged = {p.name: p.default for p in cls.get_definition().parameters}
        merged.update(config)
        return merged

    def validate_config(self):
        """Raise ValueError for an unusable config"""
        pass

    @abstractmethod
    async def init(self):
        """Prepare the strategy; may leave it not runnable"""
        pass

    @abstractmethod
    def can_run(self) -> bool:
        pass

    @abstractmethod
    async def run(self) -> StrategyAction:
        """Called once per decision tick"""
        pass

    @abstractmethod
    def set_order_status(self, side: str, status: str):
        """
        Follow an order transition

        Raises:
            InvalidTransitionError: for a (side, status) pair with no transition
        """
        pass

    @abstractmethod
    def restore(self, active_order: Optional[OrderResult], trade_plan: Optional[TradePlan]):
        """Re-enter the state implied by a persisted open order"""
        pass

    @abstractmethod
    def seconds_until_next_candle(self) -> float:
        pass

    async def wait_next_candle(self, cancel_event: Optional[asyncio.Event] = None) -> float:
        """
        Suspend until the next candle boundary.

        Returns early when `cancel_event` is set.

        Returns:
            Seconds the wait was scheduled for
        """
        delay = self.seconds_until_next_candle()
        if cancel_event is None:
            await asyncio.sleep(delay)
            return delay
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        return delay


class StrategyRegistry:
    """strategy_name -> strategy class"""

    _strategies: Dict[str, type] = {}

    @classmethod
    def register(cls, strategy_class: type):
        """Class decorator: index the strategy under its definition id"""
        definition = strategy_class.get_definition()
        cls._strategies[definition.id] = strategy_class
        return strategy_class

    @classmethod
    def get_strategy_class(cls, strategy_id: str) -> type:
        if strategy_id not in cls._strategies:
            raise ValueError(f"Unknown strategy: {strategy_id}")
        return cls._strategies[strategy_id]

    @classmethod
    def get_strategy(cls, strategy_id: str, **kwargs) -> TradingStrategy:
        """Instantiate the strategy registered under `strategy_id`"""
        return cls.get_strategy_class(strategy_id)(**kwargs)

    @classmethod
    def list_strategies(cls) -> List[StrategyDefinition]:
        """Definitions of every registered strategy"""
        return [strategy_class.get_definition() for strategy_class in cls._strategies.values()]


# Implementations register themselves on import, so this stays below StrategyRegistry
from trader.strategies import rsi_over_sma  # noqa: E402

__all__ = [
    "TradingStrategy",
    "StrategyDefinition",
    "StrategyParameter",
    "StrategyRegistry",
    "utc_now",
    "rsi_over_sma",
]
