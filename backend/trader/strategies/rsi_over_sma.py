"""
RSI over SMA breakout strategy

Trades one pair for one day:
1. init(): yesterday's daily candle must be bullish. Its low becomes support
   and its high resistance.
2. run() on every closed 15m candle: when RSI(14) crosses above its own
   SMA(14) by more than the threshold while RSI sits inside (35, 60), plan a
   stop-limit entry one tick above the candle high, a take-profit one tick
   under resistance and a stop-loss under support (or tighter, from the
   risk/reward ratio).
3. While the entry is pending, cancel it if the market reaches either exit
   level first.
4. At the end of the window, close whatever is still open.

The engine never places orders. It emits actions and follows order
transitions through set_order_status().
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from trader.config import settings
from trader.exceptions import InvalidTransitionError
from trader.exchange_clients.base import ExchangeGateway
from trader.indicator_calculator import IndicatorCalculator
from trader.precision import floor_to_increment, round_money
from trader.schemas import ActionType, Candle, OrderResult, StrategyAction, TradePlan
from trader.strategies import StrategyDefinition, StrategyParameter, StrategyRegistry, TradingStrategy, utc_now
from trader.trading_engine.retry import RetryPolicy

logger = logging.getLogger(__name__)

RSI_UPPER_BAND = 60
RSI_LOWER_BAND = 35
RSI_PERIOD = 14
SMA_PERIOD = 14
CROSS_OVER_THRESHOLD = 0.5
MINIMUM_PROFIT = 0.5  # %
RISK_REWARD = 1 / 1.1
MINIMUM_BULLISH_CHANGE = 2  # %

INTERVAL_SECONDS = {"m": 60, "h": 3600, "d": 86400}


def interval_to_seconds(interval: str) -> int:
    """"15m" -> 900"""
    unit = interval[-1]
    if unit not in INTERVAL_SECONDS or not interval[:-1].isdigit():
        raise ValueError(f"Unsupported candle interval {interval!r}")
    return int(interval[:-1]) * INTERVAL_SECONDS[unit]


def is_bullish(candle: Candle, minimum_change: float = MINIMUM_BULLISH_CHANGE) -> bool:
    """Closed at or above its open with a high-low range above `minimum_change` % of the high"""
    if candle.high <= 0:
        return False
    change = (candle.high - candle.low) / candle.high * 100
    return candle.close >= candle.open and change > minimum_change


def _d(value: float) -> Decimal:
    return Decimal(str(value))


class SignalState(str, Enum):
    """Engine states; the values double as the idle action names"""

    AWAITING_BUY_SIGNAL = "wait_buy_signal"
    AWAITING_ENTRY_FILL = "wait_for_entry"
    AWAITING_SELL_ORDER = "wait_for_sell_order"
    AWAITING_EXIT = "wait_for_exit"
    DONE = "done"


TRANSITIONS = {
    ("buy", "placed"): SignalState.AWAITING_ENTRY_FILL,
    ("buy", "filled"): SignalState.AWAITING_SELL_ORDER,
    ("buy", "cancelled"): SignalState.AWAITING_BUY_SIGNAL,
    ("sell", "placed"): SignalState.AWAITING_EXIT,
    ("sell", "cancelled"): SignalState.AWAITING_EXIT,
    ("sell", "filled"): SignalState.AWAITING_BUY_SIGNAL,
}

# Forced exits when the window closes with something still open
END_OF_DAY_ACTIONS = {
    SignalState.AWAITING_ENTRY_FILL: ActionType.CANCEL_BUY,
    SignalState.AWAITING_SELL_ORDER: ActionType.SELL,
    SignalState.AWAITING_EXIT: ActionType.SELL,
}


def _candle_payload(candle: Optional[Candle]) -> Optional[Dict[str, Any]]:
    return candle.model_dump(mode="json") if candle else None


@StrategyRegistry.register
class RsiOverSmaStrategy(TradingStrategy):
    """
    RSI/SMA crossover entries bounded by yesterday's bullish candle

    Prices are computed with Decimal and floored to the pair's tick size.
    """

    def __init__(
        self,
        exchange: ExchangeGateway,
        symbol: str,
        start_time: datetime,
        end_time: datetime,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utc_now,
        tick_size: Optional[float] = None,
        indicator_calculator: Optional[IndicatorCalculator] = None,
    ):
        super().__init__(exchange, symbol, start_time, end_time, config=config, clock=clock)
        self.tick_size = tick_size
        self.indicators = indicator_calculator or IndicatorCalculator()
        self.candle_fetch_policy = RetryPolicy(
            max_attempts=self.config["candle_fetch_max_retries"],
            delay_seconds=self.config["candle_fetch_retry_delay_seconds"],
        )

        self.state = SignalState.AWAITING_BUY_SIGNAL
        self.reason: Optional[str] = None
        self.bullish_candle: Optional[Candle] = None
        self.support: Optional[float] = None  # Bullish candle low
        self.resistance: Optional[float] = None  # Bullish candle high
        self.candles: List[Candle] = []
        self.trade_plan: Optional[TradePlan] = None

    @classmethod
    def get_definition(cls) -> StrategyDefinition:
        return StrategyDefinition(
            id="rsi_over_sma",
            name="RSI over SMA",
            description="Buys RSI/SMA crossovers between yesterday's bullish candle low and high",
            parameters=[
                StrategyParameter(name="rsi_upper_band", description="RSI must be below this", type="float", default=RSI_UPPER_BAND),
                StrategyParameter(name="rsi_lower_band", description="RSI must be above this", type="float", default=RSI_LOWER_BAND),
                StrategyParameter(name="rsi_period", description="RSI period", type="int", default=RSI_PERIOD),
                StrategyParameter(name="sma_period", description="Period of the SMA over RSI", type="int", default=SMA_PERIOD),
                StrategyParameter(
                    name="cross_over_threshold",
                    description="Minimum RSI - SMA gap on the crossing candle",
                    type="float",
                    default=CROSS_OVER_THRESHOLD,
                ),
                StrategyParameter(
                    name="minimum_profit", description="Minimum profit % to resistance", type="float", default=MINIMUM_PROFIT
                ),
                StrategyParameter(name="risk_reward", description="Risk per unit of reward", type="float", default=RISK_REWARD),
                StrategyParameter(
                    name="minimum_bullish_change",
                    description="Minimum high-low range % for yesterday's candle",
                    type="float",
                    default=MINIMUM_BULLISH_CHANGE,
                ),
                StrategyParameter(name="candle_interval", description="Decision candle interval", type="string", default=settings.candle_interval),
                StrategyParameter(name="candle_limit", description="Candles fetched per tick", type="int", default=settings.candle_limit),
                StrategyParameter(
                    name="next_candle_margin_seconds",
                    description="Delay after the candle boundary before deciding",
                    type="float",
                    default=settings.next_candle_margin_seconds,
                ),
                StrategyParameter(
                    name="candle_fetch_max_retries",
                    description="Attempts per candle fetch",
                    type="int",
                    default=settings.candle_fetch_max_retries,
                ),
                StrategyParameter(
                    name="candle_fetch_retry_delay_seconds",
                    description="Delay between candle fetch attempts",
                    type="float",
                    default=settings.candle_fetch_retry_delay_seconds,
                ),
            ],
        )

    def validate_config(self):
        if self.config["rsi_lower_band"] >= self.config["rsi_upper_band"]:
            raise ValueError("rsi_lower_band must be below rsi_upper_band")
        interval_to_seconds(self.config["candle_interval"])

    # ========================================
    # LIFECYCLE
    # ========================================

    async def init(self):
        if self.tick_size is None:
            self.tick_size = await self.exchange.get_tick_size(self.symbol)

        candles = await self.candle_fetch_policy.run(
            lambda: self.exchange.get_candles(
                self.symbol, "1d", self.start_time, self.start_time + timedelta(days=1), limit=1
            ),
            description=f"Daily candle fetch for {self.symbol}",
        )

        candle = candles[0] if candles else None
        if candle and is_bullish(candle, self.config["minimum_bullish_change"]):
            self.bullish_candle = candle
            self.support = candle.low
            self.resistance = candle.high
            logger.info(f"[{self.symbol}] Bullish candle found: support={self.support} resistance={self.resistance}")
        else:
            self._finish("no bullish candle")

    def can_run(self) -> bool:
        return self.state != SignalState.DONE

    def restore(self, active_order: Optional[OrderResult], trade_plan: Optional[TradePlan]):
        """
        Pick a position back up after a restart

        An open order outranks init(): a campaign holding coins must keep
        being managed even if today has no bullish candle.
        """
        if active_order is None:
            return

        if active_order.side == "buy" and active_order.status == "placed":
            state = SignalState.AWAITING_ENTRY_FILL
        elif active_order.side == "buy" and active_order.status == "filled":
            state = SignalState.AWAITING_SELL_ORDER
        elif active_order.side == "sell" and active_order.status in ("placed", "cancelled"):
            state = SignalState.AWAITING_EXIT
        else:
            return

        self.state = state
        self.reason = None
        if trade_plan is not None:
            self.trade_plan = trade_plan
        logger.info(f"[{self.symbol}] Restored state {state.value} from order {active_order.order_id}")

    def set_order_status(self, side: str, status: str):
        next_state = TRANSITIONS.get((side, status))
        if next_state is None:
            raise InvalidTransitionError(side, status)

        # A forced end-of-day exit must not revive a finished engine
        if self.state == SignalState.DONE:
            return

        self.state = next_state

    def seconds_until_next_candle(self) -> float:
        interval = interval_to_seconds(self.config["candle_interval"])
        epoch = self.clock().timestamp()
        return interval - (epoch % interval) + self.config["next_candle_margin_seconds"]

    # ========================================
    # DECISIONS
    # ========================================

    async def refresh_candles(self):
        """Load the decision window, dropping the live candle"""
        candles = await self.candle_fetch_policy.run(
            lambda: self.exchange.get_candles(
                self.symbol,
                self.config["candle_interval"],
                self.start_time,
                self.end_time,
                limit=self.config["candle_limit"],
            ),
            description=f"Candle fetch for {self.symbol}",
        )
        now = self.clock()
        self.candles = [c for c in candles if c.is_closed(now)]

    async def run(self) -> StrategyAction:
        await self.refresh_candles()

        current = self.candles[-1] if self.candles else None

        if current and current.open_time < self.start_time + timedelta(days=1):
            return StrategyAction(action=ActionType.WAIT_FOR_TRADE_TIME, payload={"current_candle": _candle_payload(current)})

        if self.clock() + timedelta(seconds=1) > self.end_time:
            return self._end_of_day(current)

        if current is None:
            return self._idle(None)

        if self.state == SignalState.AWAITING_BUY_SIGNAL:
            if self.support is None or self.resistance is None:
                self._finish("no bullish candle")
                return StrategyAction(
                    action=ActionType.END, payload={"current_candle": _candle_payload(current), "reason": "no_bullish_candle"}
                )

            plan = self._plan_entry(current)
            if plan is not None:
                self.trade_plan = plan
                self.state = SignalState.AWAITING_ENTRY_FILL
                logger.info(
                    f"[{self.symbol}] 🟢 Buy signal: entry={plan.entry_price} tp={plan.take_profit} "
                    f"sl={plan.stop_loss} profit={plan.possible_profit_pct}%"
                )
                return StrategyAction(action=ActionType.BUY, payload=plan.model_dump(mode="json"))

        elif self.state == SignalState.AWAITING_ENTRY_FILL and self.trade_plan is not None:
            stop_loss_reached = current.low <= self.trade_plan.stop_loss
            take_profit_reached = current.high >= self.trade_plan.take_profit

            if stop_loss_reached or take_profit_reached:
                self.state = SignalState.AWAITING_BUY_SIGNAL
                reason = "stop_loss_reached" if stop_loss_reached else "take_profit_reached"
                logger.info(f"[{self.symbol}] Entry invalidated before fill: {reason}")
                return StrategyAction(
                    action=ActionType.CANCEL_BUY,
                    payload={
                        "current_candle": _candle_payload(current),
                        "stop_loss_reached": stop_loss_reached,
                        "take_profit_reached": take_profit_reached,
                        "stop_loss": self.trade_plan.stop_loss,
                        "take_profit": self.trade_plan.take_profit,
                        "reason": reason,
                    },
                )

        return self._idle(current)

    def is_crossover(self) -> bool:
        """RSI - SMA(RSI) exceeds the threshold now but did not on the previous candle, RSI inside the band"""
        closes = [c.close for c in self.candles]
        rsi = self.indicators.calculate_rsi_series(closes, self.config["rsi_period"])
        rsi_sma = self.indicators.calculate_sma_series(rsi, self.config["sma_period"])
        if len(rsi) < 2 or len(rsi_sma) < 2:
            return False

        current_rsi, prev_rsi = rsi[-1], rsi[-2]
        current_sma, prev_sma = rsi_sma[-1], rsi_sma[-2]
        threshold = self.config["cross_over_threshold"]

        rsi_in_range = self.config["rsi_lower_band"] < current_rsi < self.config["rsi_upper_band"]
        crossed_over = current_rsi - current_sma > threshold and not (prev_rsi - prev_sma > threshold)
        return rsi_in_range and crossed_over

    def _plan_entry(self, candle: Candle) -> Optional[TradePlan]:
        if not self.is_crossover():
            return None

        tick = _d(self.tick_size)
        support = _d(self.support)
        resistance = _d(self.resistance)
        high = _d(candle.high)
        close = _d(candle.close)

        entry = _d(floor_to_increment(high + tick, tick))
        if not (support + tick < entry < resistance - tick):
            return None

        possible_profit = round_money((resistance - 2 * tick - high) / close * 100)
        if possible_profit <= self.config["minimum_profit"]:
            return None

        take_profit = _d(floor_to_increment(resistance - tick, tick))
        risk = entry - (take_profit - entry) * _d(self.config["risk_reward"])
        stop_loss = _d(floor_to_increment(max(support - tick, risk), tick))
        if not (stop_loss < entry < take_profit):
            return None

        possible_loss = round_money((entry - stop_loss) / close * 100)

        return TradePlan(
            entry_price=float(entry),
            take_profit=float(take_profit),
            stop_loss=float(stop_loss),
            possible_profit_pct=possible_profit,
            possible_loss_pct=possible_loss,
            reason="rsi_crossed_over",
            current_candle=candle,
        )

    def _end_of_day(self, current: Optional[Candle]) -> StrategyAction:
        action = END_OF_DAY_ACTIONS.get(self.state, ActionType.END)
        self._finish("end_of_day")
        return StrategyAction(action=action, payload={"current_candle": _candle_payload(current), "reason": "end_of_day"})

    def _idle(self, current: Optional[Candle]) -> StrategyAction:
        return StrategyAction(action=self.state.value, payload={"current_candle": _candle_payload(current)})

    def _finish(self, reason: str):
        self.state = SignalState.DONE
        self.reason = reason
        logger.info(f"[{self.symbol}] Strategy done: {reason}")
