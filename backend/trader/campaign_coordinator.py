"""
Campaign coordinator

Polls the ledger for active campaigns and runs one independent decision loop
per campaign. A failing campaign is logged and restarted; it never takes the
coordinator or the other campaigns down with it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from trader.config import settings
from trader.database import async_session_maker
from trader.exceptions import CampaignNotFoundError, NoStrategyFoundError
from trader.exchange_clients.base import ExchangeGateway
from trader.schemas import ActionType
from trader.strategies import StrategyRegistry, TradingStrategy, utc_now
from trader.trading_engine.order_logger import log_event
from trader.trading_engine.orchestrator import OrderLifecycleOrchestrator
from trader.trading_engine.position_manager import (
    get_active_campaign_ids,
    get_active_order,
    get_campaign,
    get_trade_plan,
)
from trader.trading_engine.trade_context import TradeContext

logger = logging.getLogger(__name__)


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def strategy_window(now: datetime):
    """(start of yesterday, start of tomorrow) in the clock's timezone"""
    today = start_of_day(now)
    return today - timedelta(days=1), today + timedelta(days=1)


@dataclass
class CampaignRun:
    campaign_id: int
    task: asyncio.Task
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


class CampaignRegistry:
    """Campaign id -> running loop; entries leave when their task finishes"""

    def __init__(self):
        self._runs: Dict[int, CampaignRun] = {}

    def __contains__(self, campaign_id: int) -> bool:
        return campaign_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)

    def ids(self) -> List[int]:
        return list(self._runs)

    def get(self, campaign_id: int) -> Optional[CampaignRun]:
        return self._runs.get(campaign_id)

    def add(self, run: CampaignRun):
        self._runs[run.campaign_id] = run

        def _remove(done: asyncio.Task):
            if self._runs.get(run.campaign_id) is run:
                del self._runs[run.campaign_id]
                logger.info(f"[Campaign {run.campaign_id}] loop removed from registry")

        run.task.add_done_callback(_remove)

    def runs(self) -> List[CampaignRun]:
        return list(self._runs.values())


class CampaignCoordinator:
    """
    Starts, restarts and stops per-campaign decision loops

    Args:
        exchange: Gateway handed to every signal engine
        orchestrator: Executes the engines' actions
        session_maker: Ledger session factory
        strategy_factory: Builds an engine from (strategy_name, **kwargs);
            defaults to the strategy registry
        clock: Returns the current aware UTC time
    """

    def __init__(
        self,
        exchange: ExchangeGateway,
        orchestrator: OrderLifecycleOrchestrator,
        session_maker: async_sessionmaker = async_session_maker,
        poll_seconds: Optional[float] = None,
        restart_delay_seconds: Optional[float] = None,
        candidate_base_assets: Optional[List[str]] = None,
        strategy_factory: Optional[Callable[..., TradingStrategy]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.exchange = exchange
        self.orchestrator = orchestrator
        self.session_maker = session_maker
        self.poll_seconds = settings.coordinator_poll_seconds if poll_seconds is None else poll_seconds
        self.restart_delay_seconds = (
            settings.campaign_restart_delay_seconds if restart_delay_seconds is None else restart_delay_seconds
        )
        self.candidate_base_assets = candidate_base_assets or list(settings.candidate_base_assets)
        self.strategy_factory = strategy_factory or StrategyRegistry.get_strategy
        self.clock = clock

        self.registry = CampaignRegistry()
        self._window_ends: Dict[int, datetime] = {}  # campaign id -> end of a window finished at end of day
        self.running = False
        self.task: Optional[asyncio.Task] = None

    # ========================================
    # POLLING
    # ========================================

    async def start(self):
        if self.running:
            logger.warning("Coordinator already running, ignoring duplicate start() call")
            return
        self.running = True
        self.task = asyncio.create_task(self._poll_loop())
        logger.info("🚀 Campaign coordinator started")

    async def stop(self):
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None

        runs = self.registry.runs()
        for run in runs:
            self.cancel_campaign(run.campaign_id)
        if runs:
            await asyncio.gather(*(run.task for run in runs), return_exceptions=True)
        logger.info("Campaign coordinator stopped")

    async def _poll_loop(self):
        while self.running:
            try:
                await self.sync_campaigns()
            except Exception as e:
                logger.error(f"Error polling campaigns: {e}", exc_info=True)
            await asyncio.sleep(self.poll_seconds)

    async def sync_campaigns(self) -> List[int]:
        """
        One coordinator tick

        Starts a loop for every active campaign not yet tracked and cancels
        tracked campaigns that are no longer active.

        Returns:
            Ids of the campaigns started by this call
        """
        async with self.session_maker() as db:
            active_ids = await get_active_campaign_ids(db)

        for campaign_id in self.registry.ids():
            if campaign_id not in active_ids:
                self.cancel_campaign(campaign_id)

        started = []
        for campaign_id in active_ids:
            if campaign_id in self.registry:
                continue
            self.start_campaign(campaign_id)
            started.append(campaign_id)
        return started

    def start_campaign(self, campaign_id: int) -> CampaignRun:
        existing = self.registry.get(campaign_id)
        if existing is not None:
            return existing

        cancel_event = asyncio.Event()
        task = asyncio.create_task(self.run_campaign(campaign_id, cancel_event))
        run = CampaignRun(campaign_id=campaign_id, task=task, cancel_event=cancel_event)
        self.registry.add(run)
        logger.info(f"[Campaign {campaign_id}] ▶️ loop started")
        return run

    def cancel_campaign(self, campaign_id: int) -> bool:
        """Stop the campaign's loop, watchers and stop-loss; exchange orders stay as they are"""
        run = self.registry.get(campaign_id)
        if run is None or run.cancel_event.is_set():
            return False
        run.cancel_event.set()
        self.orchestrator.stop_campaign(campaign_id)
        logger.info(f"[Campaign {campaign_id}] ⏹️ loop cancelled")
        return True

    # ========================================
    # PER-CAMPAIGN LOOP
    # ========================================

    async def _pause(self, cancel_event: asyncio.Event, delay: float):
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=max(delay, 0))
        except asyncio.TimeoutError:
            pass

    def seconds_until_next_day(self) -> float:
        now = self.clock()
        return (start_of_day(now) + timedelta(days=1) - now).total_seconds()

    def restart_delay(self, campaign_id: int) -> float:
        """Seconds before the next engine; a day finished early waits out its window"""
        delay = self.restart_delay_seconds
        window_end = self._window_ends.pop(campaign_id, None)
        if window_end is not None:
            remaining = (window_end - self.clock()).total_seconds()
            if remaining > delay:
                logger.info(f"[Campaign {campaign_id}] Day finished - next run in {remaining:.1f}s")
                delay = remaining
        return delay

    async def run_campaign(self, campaign_id: int, cancel_event: asyncio.Event):
        """Long-lived loop for one campaign; restarts the engine forever until cancelled"""
        while not cancel_event.is_set():
            delay = self.restart_delay_seconds
            try:
                finished = await self.run_campaign_once(campaign_id, cancel_event)
                if not finished:
                    self._window_ends.pop(campaign_id, None)
                    return
                delay = self.restart_delay(campaign_id)
            except NoStrategyFoundError as e:
                delay = self.seconds_until_next_day()
                logger.warning(f"[Campaign {campaign_id}] {e.message} - retrying in {delay:.0f}s")
                await self._pause(cancel_event, delay)
                continue
            except CampaignNotFoundError as e:
                logger.error(f"[Campaign {campaign_id}] {e.message} - loop stopped")
                return
            except Exception as e:
                logger.error(f"[Campaign {campaign_id}] loop failed: {e}", exc_info=True)

            await self._pause(cancel_event, delay)

        logger.info(f"[Campaign {campaign_id}] loop exited")

    async def select_strategy(self, campaign_id: int, cancel_event: asyncio.Event) -> TradeContext:
        """
        Build the engine for this run

        A campaign holding a position is bound to the position's symbol;
        otherwise candidates are scanned in order and the first engine still
        runnable after init() wins.

        Raises:
            NoStrategyFoundError: no candidate is runnable today
        """
        async with self.session_maker() as db:
            campaign = await get_campaign(db, campaign_id)
            strategy_name = campaign.strategy_name
            quote = campaign.quote_currency
            active_order = get_active_order(campaign)
            trade_plan = get_trade_plan(campaign)

        start_time, end_time = strategy_window(self.clock())

        def build(symbol: str) -> TradingStrategy:
            return self.strategy_factory(
                strategy_name,
                exchange=self.exchange,
                symbol=symbol,
                start_time=start_time,
                end_time=end_time,
                clock=self.clock,
            )

        if active_order is not None:
            strategy = build(active_order.symbol)
            await strategy.init()
            strategy.restore(active_order, trade_plan)
            logger.info(f"[Campaign {campaign_id}] Resuming position on {active_order.symbol}")
            return TradeContext(campaign_id, active_order.symbol, strategy, cancel_event)

        for base in self.candidate_base_assets:
            symbol = f"{base}{quote}"
            strategy = build(symbol)
            await strategy.init()
            if strategy.can_run():
                logger.info(f"[Campaign {campaign_id}] Strategy found for {symbol}")
                return TradeContext(campaign_id, symbol, strategy, cancel_event)

        raise NoStrategyFoundError(f"No strategy found for campaign {campaign_id}")

    async def run_campaign_once(self, campaign_id: int, cancel_event: asyncio.Event) -> bool:
        """
        Run one engine from selection to its terminal state

        Returns:
            True if the campaign should be restarted, False once it is no
            longer active
        """
        ctx = await self.select_strategy(campaign_id, cancel_event)
        await self.orchestrator.resume(ctx)

        while ctx.strategy.can_run() and not ctx.cancelled:
            action = await ctx.strategy.run()
            logger.info(f"[Campaign {campaign_id}] action={action.action} symbol={ctx.symbol}")

            if action.is_executable:
                await self.orchestrator.execute_action(ctx, action)
                async with self.session_maker() as db:
                    await log_event(db, campaign_id, action.action, action.payload)
                    await db.commit()

            if action.action == ActionType.END or not ctx.strategy.can_run():
                break
            await ctx.strategy.wait_next_candle(ctx.cancel_event)

        logger.info(f"[Campaign {campaign_id}] strategy done reason=\"{getattr(ctx.strategy, 'reason', '')}\"")
        if getattr(ctx.strategy, "reason", None) == "end_of_day":
            self._window_ends[campaign_id] = ctx.strategy.end_time

        async with self.session_maker() as db:
            campaign = await get_campaign(db, campaign_id)
            return campaign.status == "active" and not ctx.cancelled

    def get_status(self):
        return {
            "running": self.running,
            "campaigns": self.registry.ids(),
            "orchestrator": self.orchestrator.get_status(),
        }
