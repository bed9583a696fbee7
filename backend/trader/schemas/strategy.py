"""Strategy decision schemas"""

from typing import Any, Dict, Optional

from pydantic import BaseModel

from .market import Candle


class ActionType:
    """Actions the signal engine can emit from run()"""

    BUY = "buy"
    CANCEL_BUY = "cancel_buy"
    SELL = "sell"
    END = "end"
    WAIT_FOR_TRADE_TIME = "wait_for_trade_time"

    # Idle actions, one per engine state
    WAIT_BUY_SIGNAL = "wait_buy_signal"
    WAIT_FOR_ENTRY = "wait_for_entry"
    WAIT_FOR_SELL_ORDER = "wait_for_sell_order"
    WAIT_FOR_EXIT = "wait_for_exit"

    # Actions that are executed against the exchange and audited as events
    EXECUTABLE = (BUY, CANCEL_BUY, SELL)


class TradePlan(BaseModel):
    entry_price: float
    take_profit: float
    stop_loss: float
    possible_profit_pct: float = 0.0
    possible_loss_pct: float = 0.0
    reason: str = ""
    current_candle: Optional[Candle] = None


class StrategyAction(BaseModel):
    action: str
    payload: Dict[str, Any] = {}

    @property
    def is_executable(self) -> bool:
        return self.action in ActionType.EXECUTABLE
