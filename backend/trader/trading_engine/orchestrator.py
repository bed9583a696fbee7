"""
Order lifecycle orchestrator

Turns signal engine decisions into exchange orders and keeps the ledger in
step with them:
- handle_buy / handle_cancel / handle_sell execute strategy actions
- watch_order_till_fill polls open orders in the background
- a filled buy spawns a take-profit order AND arms a stop-loss trigger;
  whichever closes the position first wins
- handle_order_update is the single place an order transition reaches the
  ledger, the campaign and the signal engine

Every ledger write is gated by the (order_id, client_order_id, side, status)
dedup key, so racing watchers can report the same transition safely.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from trader.config import settings
from trader.currency_utils import get_base_currency
from trader.database import async_session_maker
from trader.exceptions import ExchangeError, InvalidTransitionError
from trader.exchange_clients.base import ExchangeGateway
from trader.schemas import ActionType, OrderResult, RateLimitBudget, StrategyAction, TradePlan
from trader.services.shutdown_manager import ShutdownManager, shutdown_manager
from trader.trading_client import TradingClient
from trader.trading_engine.position_manager import (
    apply_filled_order,
    apply_order_to_campaign,
    apply_partial_sell,
    get_active_order,
    get_campaign,
    get_trade_plan,
    holds_position_for,
    record_order,
    store_trade_plan,
)
from trader.trading_engine.retry import RetryPolicy
from trader.trading_engine.stop_loss_trigger import StopLossTrigger
from trader.trading_engine.trade_context import TradeContext
from trader.trading_engine.trade_recorder import record_trade

logger = logging.getLogger(__name__)


def choose_poll_interval(budget: RateLimitBudget, fast: float, slow: float, comfort_ratio: float) -> float:
    """
    Delay before the next order status poll

    Fast while more than `comfort_ratio` of the weight budget is left, slow
    while any is left, and once it is exhausted wait for the window reset.
    """
    if budget.limit <= 0:
        return slow
    if budget.ratio_remaining > comfort_ratio:
        return fast
    if budget.remaining > 0:
        return slow
    return max(budget.reset_in_seconds, fast)


def _base(symbol: str) -> str:
    try:
        return get_base_currency(symbol)
    except ValueError:
        return symbol


class OrderLifecycleOrchestrator:
    """
    Executes strategy actions against the exchange

    One instance serves every campaign of the process. State kept here is
    in-memory coordination only (locks, watcher tasks, exit permits, armed
    stop-losses); everything durable lives in the ledger.
    """

    def __init__(
        self,
        exchange: ExchangeGateway,
        session_maker: async_sessionmaker = async_session_maker,
        trading_client: Optional[TradingClient] = None,
        shutdown: Optional[ShutdownManager] = None,
        min_trade_balance: Optional[float] = None,
        poll_fast_seconds: Optional[float] = None,
        poll_slow_seconds: Optional[float] = None,
        comfort_ratio: Optional[float] = None,
        watcher_retry: Optional[RetryPolicy] = None,
        sell_retry: Optional[RetryPolicy] = None,
    ):
        self.exchange = exchange
        self.session_maker = session_maker
        self.trading_client = trading_client or TradingClient(exchange)
        self.shutdown = shutdown or shutdown_manager
        self.min_trade_balance = settings.min_trade_balance if min_trade_balance is None else min_trade_balance
        self.poll_fast_seconds = settings.order_poll_fast_seconds if poll_fast_seconds is None else poll_fast_seconds
        self.poll_slow_seconds = settings.order_poll_slow_seconds if poll_slow_seconds is None else poll_slow_seconds
        self.comfort_ratio = settings.rate_limit_comfort_ratio if comfort_ratio is None else comfort_ratio
        self.watcher_retry = watcher_retry or RetryPolicy(
            settings.watcher_max_retries, settings.watcher_retry_delay_seconds
        )
        self.sell_retry = sell_retry or RetryPolicy(settings.sell_max_retries, settings.sell_retry_delay_seconds)

        self._ledger_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._exit_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._exit_claims: Set[Tuple[int, str]] = set()
        self._watchers: Dict[Tuple[int, str], asyncio.Task] = {}
        self._stop_losses: Dict[int, StopLossTrigger] = {}

    # ========================================
    # LEDGER
    # ========================================

    async def load_position(self, campaign_id: int) -> Tuple[Optional[OrderResult], Optional[TradePlan]]:
        async with self.session_maker() as db:
            campaign = await get_campaign(db, campaign_id)
            return get_active_order(campaign), get_trade_plan(campaign)

    async def minimum_balance(self, symbol: str) -> float:
        """Balance below which the campaign cannot open another position"""
        try:
            min_notional = await self.exchange.get_min_notional(symbol)
        except ExchangeError as e:
            logger.warning(f"Min notional for {symbol} unavailable ({e.message}) - using {self.min_trade_balance}")
            return self.min_trade_balance
        return max(self.min_trade_balance, min_notional)

    async def handle_order_update(self, ctx: TradeContext, order: OrderResult) -> bool:
        """
        Apply one order transition

        Records the transition, moves the signal engine, updates the
        campaign's active order / trade plan, and on a fill moves cash and
        coins (plus a Trade for a filled sell). A transition that was
        already recorded changes nothing. A sell that does not belong to the
        campaign's open position is recorded but never touches the campaign.

        Returns:
            True if this call applied the transition, False for a duplicate
            or a sell without a matching position

        Raises:
            InvalidTransitionError: the engine has no transition for the pair;
                nothing is committed
        """
        closes_position = order.is_filled and order.side == "sell"
        min_balance = await self.minimum_balance(order.symbol) if closes_position else self.min_trade_balance

        async with self._ledger_locks[ctx.campaign_id]:
            async with self.session_maker() as db:
                row = await record_order(db, ctx.campaign_id, order)
                if row is None:
                    return False

                campaign = await get_campaign(db, ctx.campaign_id)
                if order.side == "sell" and not holds_position_for(campaign, order):
                    logger.error(
                        f"[Order Update] [Campaign {ctx.campaign_id}] {order.status} sell {order.order_id} "
                        f"(clientOrderId={order.client_order_id}) has no open position - ledger untouched"
                    )
                    await db.commit()
                    return False

                ctx.strategy.set_order_status(order.side, order.status)

                logger.info(
                    f"[Order Update] [Campaign {ctx.campaign_id}] status={order.status} side={order.side} "
                    f"amount={order.order_amount} {_base(order.symbol)} "
                    f"price={order.executed_price or order.order_price} reason=\"{order.reason}\" "
                    f"orderId={order.order_id}"
                )

                apply_order_to_campaign(campaign, order)

                if order.is_filled:
                    apply_filled_order(campaign, order, min_balance)
                    if order.side == "sell":
                        await record_trade(db, ctx.campaign_id, row)
                elif order.is_cancelled and order.side == "sell" and order.executed_amount > 0:
                    apply_partial_sell(campaign, order)

                await db.commit()

        if closes_position:
            self._exit_claims.add((ctx.campaign_id, order.client_order_id))
            self.disarm_stop_loss(ctx.campaign_id)
        return True

    # ========================================
    # ACTIONS
    # ========================================

    async def execute_action(self, ctx: TradeContext, action: StrategyAction) -> Optional[OrderResult]:
        """Dispatch an executable strategy action; idle actions return None"""
        if action.action == ActionType.BUY:
            return await self.handle_buy(ctx, TradePlan.model_validate(action.payload))
        if action.action == ActionType.CANCEL_BUY:
            return await self.handle_cancel(ctx)
        if action.action == ActionType.SELL:
            return await self.handle_sell(ctx)
        return None

    async def handle_buy(self, ctx: TradeContext, plan: TradePlan) -> OrderResult:
        async with self.session_maker() as db:
            campaign = await get_campaign(db, ctx.campaign_id)
            active = get_active_order(campaign)
            balance = campaign.balance
            quote = campaign.quote_currency

        logger.info(
            f"[Buy] [Campaign {ctx.campaign_id}] entryPrice={plan.entry_price} takeProfit={plan.take_profit} "
            f"stopLoss={plan.stop_loss} possibleProfit={plan.possible_profit_pct}% balance={balance} {quote}"
        )

        if active is not None and active.is_placed:
            logger.warning(f"[Buy] [Campaign {ctx.campaign_id}] An order is already placed - watching order instead")
            self.watch_order_till_fill(ctx, active, plan)
            return active

        # Never size past what the account actually holds
        free = await self.trading_client.get_quote_balance(ctx.symbol)
        if free < balance:
            logger.warning(f"[Buy] [Campaign {ctx.campaign_id}] Exchange holds {free} {quote}, less than balance {balance}")
            balance = free

        async with self.shutdown.order_in_flight():
            order = await self.trading_client.buy_stop_limit(ctx.symbol, balance, plan.entry_price)

        if not order.is_cancelled:
            async with self.session_maker() as db:
                await store_trade_plan(db, ctx.campaign_id, plan)
                await db.commit()

        await self.handle_order_update(ctx, order)

        if order.is_placed:
            self.watch_order_till_fill(ctx, order, plan)
        elif order.is_filled:
            await self._on_buy_filled(ctx, order, plan)
        return order

    async def handle_cancel(self, ctx: TradeContext) -> Optional[OrderResult]:
        """
        Cancel the active order if it is still open on the exchange

        Returns the exchange's view untouched when the order already reached
        a terminal status (filled orders must not be cancelled).
        """
        active, _ = await self.load_position(ctx.campaign_id)
        if active is None:
            logger.warning(f"[Cancel Order] No active order found campaignId={ctx.campaign_id}")
            return None

        if not active.is_placed:
            logger.warning(f"[Cancel Order] Active order {active.order_id} is {active.status} - nothing to cancel")
            return active

        current = await self.exchange.get_order(active.symbol, active.order_id, active.client_order_id)
        if not current.is_placed:
            logger.info(f"[Cancel Order] Order {current.order_id} already {current.status} on the exchange")
            return current

        logger.info(f"[Cancel Order] orderId={active.order_id} symbol={active.symbol}")
        try:
            result = await self.trading_client.cancel_order(active)
        except ExchangeError as e:
            # Filled between the status check and the cancel
            current = await self.exchange.get_order(active.symbol, active.order_id, active.client_order_id)
            if current.is_placed:
                raise
            logger.info(f"[Cancel Order] Cancel of {active.order_id} failed ({e.message}); order is {current.status}")
            return current

        await self.handle_order_update(ctx, result)
        return result

    async def handle_sell(self, ctx: TradeContext) -> Optional[OrderResult]:
        """
        Close the position at market

        Claims the position's exit permit first; a second caller (stop-loss
        racing an end-of-day sell) gets None. Transient failures are retried;
        when retries run out the permit is released and the error propagates.
        """
        async with self._exit_locks[ctx.campaign_id]:
            active, _ = await self.load_position(ctx.campaign_id)
            if active is None:
                logger.warning(f"[Sell] No active order found campaignId={ctx.campaign_id}")
                return None

            key = (ctx.campaign_id, active.client_order_id)
            if key in self._exit_claims:
                logger.info(f"[Sell] [Campaign {ctx.campaign_id}] Exit already in progress for {active.client_order_id}")
                return None
            self._exit_claims.add(key)

        self.disarm_stop_loss(ctx.campaign_id)

        try:
            return await self.sell_retry.run(
                lambda: self._sell_position(ctx),
                description=f"[Sell] [Campaign {ctx.campaign_id}] Market sell",
            )
        except BaseException:
            self._exit_claims.discard(key)
            raise

    async def _sell_position(self, ctx: TradeContext) -> Optional[OrderResult]:
        active, _ = await self.load_position(ctx.campaign_id)
        if active is None:
            logger.info(f"[Sell] [Campaign {ctx.campaign_id}] Position already closed")
            return None

        logger.info(
            f"[Sell] [Campaign {ctx.campaign_id}] activeOrder={active.order_id} "
            f"amount={active.order_amount} {_base(active.symbol)}"
        )

        # Take-profit still open: cancel it first
        if active.side == "sell" and active.is_placed:
            logger.info(f"[Sell] Cancelling take profit order orderId={active.order_id}")
            current = await self.handle_cancel(ctx)
            if current is None:
                # The take-profit watcher closed the position after it was read
                logger.info(f"[Sell] [Campaign {ctx.campaign_id}] Position closed while cancelling take profit")
                return None
            if current.is_terminal:
                await self.handle_order_update(ctx, current)
            if current.side == "sell" and current.is_filled:
                logger.info(f"[Sell] [Campaign {ctx.campaign_id}] Take profit filled before cancel")
                return current
            active = current

        if active.side == "sell" and active.is_filled:
            return active

        amount = active.remaining_amount if active.side == "sell" else active.executed_amount
        if amount <= 0:
            logger.warning(f"[Sell] [Campaign {ctx.campaign_id}] Nothing left to sell on {active.symbol}")
            return active

        async with self.shutdown.order_in_flight():
            order = await self.trading_client.sell_market(active.symbol, amount, active.client_order_id)

        await self.handle_order_update(ctx, order)

        if order.is_cancelled:
            raise ExchangeError(f"Market sell rejected: {order.reason}")
        if order.is_placed:
            self.watch_order_till_fill(ctx, order)
        return order

    async def handle_take_profit(self, ctx: TradeContext, buy_order: OrderResult, take_profit: float) -> Optional[OrderResult]:
        """Place the limit sell for a filled buy unless the position is already exiting"""
        key = (ctx.campaign_id, buy_order.client_order_id)

        async with self._exit_locks[ctx.campaign_id]:
            if key in self._exit_claims:
                logger.info(f"[Take Profit] [Campaign {ctx.campaign_id}] Exit already claimed - skipping")
                return None

            active, _ = await self.load_position(ctx.campaign_id)
            if active is None or active.client_order_id != buy_order.client_order_id:
                logger.info(f"[Take Profit] [Campaign {ctx.campaign_id}] Position is gone - skipping")
                return None

            if active.side == "sell":
                if active.is_placed:
                    logger.warning("[Take Profit] Order was already placed - watching order instead")
                    self.watch_order_till_fill(ctx, active)
                    return active
                logger.info(f"[Take Profit] [Campaign {ctx.campaign_id}] Sell already {active.status} - skipping")
                return None

            amount = buy_order.executed_amount
            logger.info(f"[Take Profit] setup sellCoins={amount} {_base(buy_order.symbol)} takeProfit={take_profit}")

            async with self.shutdown.order_in_flight():
                order = await self.trading_client.sell_limit(
                    buy_order.symbol, amount, take_profit, buy_order.client_order_id
                )

            logger.info(
                f"[Take Profit] sellCoins={amount} {_base(buy_order.symbol)} orderId={order.order_id} status={order.status}"
            )
            await self.handle_order_update(ctx, order)

        if order.is_placed:
            self.watch_order_till_fill(ctx, order)
        return order

    def handle_stop_loss(self, ctx: TradeContext, stop_loss: float) -> StopLossTrigger:
        """Arm (or re-arm) the campaign's stop-loss trigger"""
        self.disarm_stop_loss(ctx.campaign_id)
        trigger = StopLossTrigger(ctx, stop_loss, on_trigger=lambda: self.handle_sell(ctx))
        self._stop_losses[ctx.campaign_id] = trigger
        return trigger.arm(self.exchange)

    def disarm_stop_loss(self, campaign_id: int):
        trigger = self._stop_losses.pop(campaign_id, None)
        if trigger is not None:
            trigger.disarm()

    def get_stop_loss(self, campaign_id: int) -> Optional[StopLossTrigger]:
        return self._stop_losses.get(campaign_id)

    async def _on_buy_filled(self, ctx: TradeContext, buy_order: OrderResult, plan: Optional[TradePlan]):
        """Spawn both exits for a freshly filled buy"""
        if plan is None:
            _, plan = await self.load_position(ctx.campaign_id)
        if plan is None:
            logger.error(f"[Campaign {ctx.campaign_id}] Buy {buy_order.order_id} filled without a trade plan - no exits armed")
            return

        self.handle_stop_loss(ctx, plan.stop_loss)
        try:
            await self.handle_take_profit(ctx, buy_order, plan.take_profit)
        except Exception as e:
            logger.error(f"[Take Profit] [Campaign {ctx.campaign_id}] failed: {e}", exc_info=True)

    async def resume(self, ctx: TradeContext):
        """Re-attach watchers and exits for a position persisted before a restart"""
        active, plan = await self.load_position(ctx.campaign_id)
        if active is None:
            return

        logger.info(f"[Campaign {ctx.campaign_id}] Resuming {active.side} order {active.order_id} ({active.status})")
        if active.is_placed:
            self.watch_order_till_fill(ctx, active, plan)

        if active.side == "buy" and active.is_filled:
            await self._on_buy_filled(ctx, active, plan)
        elif active.side == "sell" and plan is not None:
            self.handle_stop_loss(ctx, plan.stop_loss)

    # ========================================
    # WATCHERS
    # ========================================

    def next_poll_delay(self) -> float:
        return choose_poll_interval(
            self.exchange.remaining_rate_limit_budget(),
            self.poll_fast_seconds,
            self.poll_slow_seconds,
            self.comfort_ratio,
        )

    def watch_order_till_fill(
        self, ctx: TradeContext, order: OrderResult, plan: Optional[TradePlan] = None
    ) -> asyncio.Task:
        """Start a background poller for an open order (no-op if one is running)"""
        key = (ctx.campaign_id, order.order_id)
        existing = self._watchers.get(key)
        if existing is not None and not existing.done():
            logger.debug(f"[Watch Order] orderId={order.order_id} already watched")
            return existing

        task = asyncio.create_task(self._watch_loop(ctx, order, plan))
        self._watchers[key] = task

        def _forget(done: asyncio.Task):
            if self._watchers.get(key) is done:
                del self._watchers[key]

        task.add_done_callback(_forget)
        return task

    def is_watching(self, campaign_id: int, order_id: str) -> bool:
        task = self._watchers.get((campaign_id, order_id))
        return task is not None and not task.done()

    async def _pause(self, ctx: TradeContext, delay: float):
        try:
            await asyncio.wait_for(ctx.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _watch_loop(self, ctx: TradeContext, order: OrderResult, plan: Optional[TradePlan]) -> Optional[OrderResult]:
        failures = 0
        while not ctx.cancelled:
            try:
                current = await self.exchange.get_order(order.symbol, order.order_id, order.client_order_id)
                applied = await self.handle_order_update(ctx, current) if current.is_terminal else False
            except InvalidTransitionError as e:
                logger.error(f"[Watch Order] orderId={order.order_id} {e.message} - watcher stopped")
                return None
            except Exception as e:
                failures += 1
                if failures >= self.watcher_retry.max_attempts:
                    logger.critical(
                        f"[Watch Order] orderId={order.order_id} pair={order.symbol} gave up after {failures} "
                        f"failures: {e} - operator must intervene"
                    )
                    return None
                logger.error(
                    f"[Watch Order] orderId={order.order_id} pair={order.symbol} error={e} "
                    f"retry={failures}/{self.watcher_retry.max_attempts}"
                )
                await self._pause(ctx, self.watcher_retry.delay_for(failures))
                continue

            failures = 0
            if current.is_terminal:
                if applied and current.side == "buy" and current.is_filled:
                    await self._on_buy_filled(ctx, current, plan)
                return current

            await self._pause(ctx, self.next_poll_delay())

        logger.info(f"[Watch Order] orderId={order.order_id} stopped: campaign {ctx.campaign_id} cancelled")
        return None

    # ========================================
    # LIFECYCLE
    # ========================================

    def stop_campaign(self, campaign_id: int):
        """Drop the campaign's stop-loss, exit permits and idle locks; its watchers end on the campaign's cancel event"""
        self.disarm_stop_loss(campaign_id)
        self._exit_claims = {key for key in self._exit_claims if key[0] != campaign_id}
        for locks in (self._ledger_locks, self._exit_locks):
            lock = locks.get(campaign_id)
            if lock is not None and not lock.locked():
                del locks[campaign_id]

    async def close(self):
        """Cancel every watcher and trigger (process shutdown)"""
        for campaign_id in list(self._stop_losses):
            self.disarm_stop_loss(campaign_id)

        tasks = [t for t in self._watchers.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watchers.clear()

    def get_status(self) -> Dict[str, Any]:
        return {
            "watchers": len([t for t in self._watchers.values() if not t.done()]),
            "stop_losses": len(self._stop_losses),
            "exit_claims": len(self._exit_claims),
            "shutdown": self.shutdown.get_status(),
        }
