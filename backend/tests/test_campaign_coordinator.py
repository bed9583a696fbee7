"""
Tests for trader/campaign_coordinator.py

Covers:
- strategy_window / seconds_until_next_day
- select_strategy: candidate scan, resume on the position's symbol, no candidate
- run_campaign_once: action execution, audit events, restart decision
- run_campaign: restart after failures, next-day retry, stop on missing campaign
- sync_campaigns: start new active campaigns, cancel deactivated ones
- start/stop lifecycle and registry cleanup
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from trader.campaign_coordinator import CampaignCoordinator, CampaignRegistry, CampaignRun, strategy_window
from trader.exceptions import CampaignNotFoundError, NoStrategyFoundError
from trader.models import Event
from trader.schemas import ActionType, OrderResult, StrategyAction, TradePlan
from trader.trading_engine.position_manager import get_campaign

NOW = datetime(2024, 1, 2, 10, 15, 1, tzinfo=timezone.utc)
PLAN = TradePlan(entry_price=101.1, take_profit=109.9, stop_loss=99.9)


async def deactivate(session_maker, campaign_id):
    async with session_maker() as db:
        campaign = await get_campaign(db, campaign_id)
        campaign.status = "inactive"
        await db.commit()


class FakeStrategy:
    """Scripted signal engine: replays `actions`, END makes it unrunnable"""

    def __init__(self, symbol, actions=(), runnable=True, end_reason="End of strategy window", end_time=None):
        self.symbol = symbol
        self.end_reason = end_reason
        self.end_time = end_time
        self.actions = list(actions)
        self.runnable = runnable
        self.reason = ""
        self.init = AsyncMock()
        self.restore = MagicMock()
        self.set_order_status = MagicMock()
        self.wait_next_candle = AsyncMock(return_value=0.0)

    def can_run(self):
        return self.runnable

    async def run(self):
        action = self.actions.pop(0) if self.actions else StrategyAction(action=ActionType.END)
        if action.action == ActionType.END:
            self.runnable = False
            self.reason = self.end_reason
        return action


class StrategyFactory:
    """Hands out FakeStrategy instances per symbol and records the kwargs"""

    def __init__(self, by_symbol):
        self.by_symbol = by_symbol
        self.calls = []

    def __call__(self, strategy_name, **kwargs):
        self.calls.append((strategy_name, kwargs))
        return self.by_symbol[kwargs["symbol"]]


@pytest.fixture
def orchestrator():
    orch = MagicMock()
    orch.resume = AsyncMock()
    orch.execute_action = AsyncMock()
    orch.get_status = MagicMock(return_value={"watchers": 0})
    return orch


def make_coordinator(exchange, orchestrator, session_maker, factory, clock=lambda: NOW, **overrides):
    options = dict(
        poll_seconds=0.01,
        restart_delay_seconds=0,
        candidate_base_assets=["ETH", "BTC"],
        strategy_factory=factory,
        clock=clock,
    )
    options.update(overrides)
    return CampaignCoordinator(exchange, orchestrator, session_maker=session_maker, **options)


# ===========================================================================
# Time helpers
# ===========================================================================


class TestStrategyWindow:
    def test_yesterday_to_tomorrow(self):
        start, end = strategy_window(NOW)
        assert start == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert end == datetime(2024, 1, 3, tzinfo=timezone.utc)

    def test_seconds_until_next_day(self, mock_exchange, orchestrator, session_maker):
        clock = lambda: datetime(2024, 1, 2, 23, 59, 30, tzinfo=timezone.utc)  # noqa: E731
        coordinator = make_coordinator(mock_exchange, orchestrator, session_maker, StrategyFactory({}), clock=clock)
        assert coordinator.seconds_until_next_day() == 30.0


# ===========================================================================
# select_strategy
# ===========================================================================


class TestSelectStrategy:
    @pytest.mark.asyncio
    async def test_first_runnable_candidate_wins(self, mock_exchange, orchestrator, session_maker, make_campaign):
        campaign_id = await make_campaign(quote="USDT")
        eth = FakeStrategy("ETHUSDT", runnable=False)
        btc = FakeStrategy("BTCUSDT")
        factory = StrategyFactory({"ETHUSDT": eth, "BTCUSDT": btc})
        coordinator = make_coordinator(mock_exchange, orchestrator, session_maker, factory)

        ctx = await coordinator.select_strategy(campaign_id, asyncio.Event())

        assert ctx.symbol == "BTCUSDT"
        assert ctx.strategy is btc
        eth.init.assert_awaited_once()
        name, kwargs = factory.calls[0]
        assert name == "rsi_over_sma"
        assert kwargs["exchange"] is mock_exchange
        assert kwargs["start_time"] == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert kwargs["end_time"] == datetime(2024, 1, 3, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_no_candidate(self, mock_exchange, orchestrator, session_maker, make_campaign):
        """Failure: nothing runnable today."""
        campaign_id = await make_campaign()
        factory = StrategyFactory(
            {"ETHUSDT": FakeStrategy("ETHUSDT", runnable=False), "BTCUSDT": FakeStrategy("BTCUSDT", runnable=False)}
        )
        coordinator = make_coordinator(mock_exchange, orchestrator, session_maker, factory)

        with pytest.raises(NoStrategyFoundError):
            await coordinator.select_strategy(campaign_id, asyncio.Event())

    @pytest.mark.asyncio
    async def test_open_position_binds_symbol(self, mock_exchange, orchestrator, session_maker, make_campaign):
        """Resume: the persisted order's symbol is used and the engine restored."""
        order = OrderResult(order_id="B1", client_order_id="cid-1", symbol="BNBUSDT", side="buy", status="placed")
        campaign_id = await make_campaign(
            active_order=order.model_dump(mode="json"), trade_plan=PLAN.model_dump(mode="json")
        )
        bnb = FakeStrategy("BNBUSDT")
        factory = StrategyFactory({"BNBUSDT": bnb})
        coordinator = make_coordinator(mock_exchange, orchestrator, session_maker, factory)

        ctx = await coordinator.select_strategy(campaign_id, asyncio.Event())

        assert ctx.symbol == "BNBUSDT"
        assert len(factory.calls) == 1
        restored_order, restored_plan = bnb.restore.call_args.args
        assert restored_order.order_id == "B1"
        assert restored_plan == PLAN

    @pytest.mark.asyncio
    async def test_missing_campaign(self, mock_exchange, orchestrator, session_maker):
        coordinator = make_coordinator(mock_exchange, orchestrator, session_maker, StrategyFactory({}))
        with pytest.raises(CampaignNotFoundError):
            await coordinator.select_strategy(999, asyncio.Event())


# ===========================================================================
# run_campaign_once
# ===========================================================================


class TestRunCampaignOnce:
    @pytest.mark.asyncio
    async def test_executes_actions_and_logs_events(self, mock_exchange, orchestrator, session_maker, make_campaign):
        campaign_id = await make_campaign()
        btc = FakeStrategy(
            "BTCUSDT",
            actions=[
                StrategyAction(action=ActionType.WAIT_BUY_SIGNAL),
                StrategyAction(action=ActionType.BUY, payload=PLAN.model_dump(mode="json")),
                StrategyAction(action=ActionType.WAIT_FOR_ENTRY),
                StrategyAction(action=ActionType.END),
            ],
        )
        coordinator = make_coordinator(
            mock_exchange, orchestrator, session_maker, StrategyFactory({"BTCUSDT": btc}), candidate_base_assets=["BTC"]
        )

        restart = await coordinator.run_campaign_once(campaign_id, asyncio.Event())

        assert restart is True
        orchestrator.resume.assert_awaited_once()
        orchestrator.execute_action.assert_awaited_once()
        assert orchestrator.execute_action.await_args.args[1].action == ActionType.BUY
        assert btc.wait_next_candle.await_count == 3

        async with session_maker() as db:
            events = (await db.execute(select(Event))).scalars().all()
        assert [(e.action, e.payload["entry_price"]) for e in events] == [("buy", 101.1)]

    @pytest.mark.asyncio
    async def test_inactive_campaign_is_not_restarted(self, mock_exchange, orchestrator, session_maker, make_campaign):
        """Edge case: the sell dropped the balance below the minimum."""
        campaign_id = await make_campaign()
        btc = FakeStrategy("BTCUSDT", actions=[StrategyAction(action=ActionType.SELL)])

        async def sell_and_deactivate(ctx, action):
            await deactivate(session_maker, ctx.campaign_id)

        orchestrator.execute_action.side_effect = sell_and_deactivate
        coordinator = make_coordinator(
            mock_exchange, orchestrator, session_maker, StrategyFactory({"BTCUSDT": btc}), candidate_base_assets=["BTC"]
        )

        assert await coordinator.run_campaign_once(campaign_id, asyncio.Event()) is False

    @pytest.mark.asyncio
    async def test_cancelled_campaign_stops_loop(self, mock_exchange, orchestrator, session_maker, make_campaign):
        campaign_id = await make_campaign()
        cancel_event = asyncio.Event()
        btc = FakeStrategy("BTCUSDT", actions=[StrategyAction(action=ActionType.WAIT_BUY_SIGNAL)] * 10)
        btc.wait_next_candle.side_effect = lambda event: cancel_event.set()
        coordinator = make_coordinator(
            mock_exchange, orchestrator, session_maker, StrategyFactory({"BTCUSDT": btc}), candidate_base_assets=["BTC"]
        )

        restart = await coordinator.run_campaign_once(campaign_id, cancel_event)

        assert restart is False
        assert len(btc.actions) == 9


# ===========================================================================
# run_campaign
# ===========================================================================


class TestRunCampaign:
    @pytest.mark.asyncio
    async def test_failure_is_logged_and_restarted(self, mock_exchange, orchestrator, session_maker):
        coordinator = make_coordinator(mock_exchange, orchestrator, session_maker, StrategyFactory({}))

        with patch.object(
            coordinator, "run_campaign_once", AsyncMock(side_effect=[RuntimeError("boom"), True, False])
        ) as once:
            await asyncio.wait_for(coordinator.run_campaign(1, asyncio.Event()), timeout=2)

        assert once.await_count == 3

    @pytest.mark.asyncio
    async def test_no_strategy_waits_for_next_day(self, mock_exchange, orchestrator, session_maker):
        clock = lambda: datetime(2024, 1, 2, 23, 59, 59, 990000, tzinfo=timezone.utc)  # noqa: E731
        coordinator = make_coordinator(mock_exchange, orchestrator, session_maker, StrategyFactory({}), clock=clock)

        with patch.object(
            coordinator, "run_campaign_once", AsyncMock(side_effect=[NoStrategyFoundError(), False])
        ) as once, patch.object(coordinator, "_pause", wraps=coordinator._pause) as pause:
            await asyncio.wait_for(coordinator.run_campaign(1, asyncio.Event()), timeout=2)

        assert once.await_count == 2
        assert pause.await_args_list[0].args[1] == pytest.approx(0.01)

    @pytest.mark.asyncio
    async def test_missing_campaign_stops(self, mock_exchange, orchestrator, session_maker):
        """Failure: a deleted campaign ends its loop instead of spinning."""
        coordinator = make_coordinator(mock_exchange, orchestrator, session_maker, StrategyFactory({}))

        with patch.object(coordinator, "run_campaign_once", AsyncMock(side_effect=CampaignNotFoundError(7))) as once:
            await asyncio.wait_for(coordinator.run_campaign(7, asyncio.Event()), timeout=2)

        assert once.await_count == 1

    @pytest.mark.asyncio
    async def test_cancel_event_ends_loop(self, mock_exchange, orchestrator, session_maker):
        coordinator = make_coordinator(mock_exchange, orchestrator, session_maker, StrategyFactory({}))
        cancel_event = asyncio.Event()
        cancel_event.set()

        with patch.object(coordinator, "run_campaign_once", AsyncMock()) as once:
            await coordinator.run_campaign(1, cancel_event)

        once.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_end_of_day_waits_for_window_end(self, mock_exchange, orchestrator, session_maker, make_campaign):
        """Edge case: a day finished in its last second is not re-run on the same window."""
        campaign_id = await make_campaign()
        clock = lambda: datetime(2024, 1, 2, 23, 59, 59, 500000, tzinfo=timezone.utc)  # noqa: E731
        btc = FakeStrategy("BTCUSDT", end_reason="end_of_day", end_time=datetime(2024, 1, 3, tzinfo=timezone.utc))
        coordinator = make_coordinator(
            mock_exchange,
            orchestrator,
            session_maker,
            StrategyFactory({"BTCUSDT": btc}),
            clock=clock,
            candidate_base_assets=["BTC"],
        )
        cancel_event = asyncio.Event()
        delays = []

        async def record_pause(event, delay):
            delays.append(delay)
            cancel_event.set()

        with patch.object(coordinator, "_pause", side_effect=record_pause):
            await asyncio.wait_for(coordinator.run_campaign(campaign_id, cancel_event), timeout=2)

        assert delays == [pytest.approx(0.5)]

    @pytest.mark.asyncio
    async def test_end_of_day_after_midnight_restarts_normally(
        self, mock_exchange, orchestrator, session_maker, make_campaign
    ):
        """Edge case: the window already ended, so the regular restart delay applies."""
        campaign_id = await make_campaign()
        clock = lambda: datetime(2024, 1, 3, 0, 0, 2, tzinfo=timezone.utc)  # noqa: E731
        btc = FakeStrategy("BTCUSDT", end_reason="end_of_day", end_time=datetime(2024, 1, 3, tzinfo=timezone.utc))
        coordinator = make_coordinator(
            mock_exchange,
            orchestrator,
            session_maker,
            StrategyFactory({"BTCUSDT": btc}),
            clock=clock,
            candidate_base_assets=["BTC"],
            restart_delay_seconds=5,
        )
        cancel_event = asyncio.Event()
        delays = []

        async def record_pause(event, delay):
            delays.append(delay)
            cancel_event.set()

        with patch.object(coordinator, "_pause", side_effect=record_pause):
            await asyncio.wait_for(coordinator.run_campaign(campaign_id, cancel_event), timeout=2)

        assert delays == [5]


# ===========================================================================
# Polling and registry
# ===========================================================================


class TestSyncCampaigns:
    @pytest.mark.asyncio
    async def test_starts_active_and_cancels_deactivated(
        self, mock_exchange, orchestrator, session_maker, make_campaign
    ):
        first = await make_campaign()
        second = await make_campaign()
        await make_campaign(status="inactive")
        coordinator = make_coordinator(mock_exchange, orchestrator, session_maker, StrategyFactory({}))

        async def idle(campaign_id, cancel_event):
            await cancel_event.wait()

        with patch.object(coordinator, "run_campaign", side_effect=idle):
            assert await coordinator.sync_campaigns() == [first, second]
            assert await coordinator.sync_campaigns() == []

            await deactivate(session_maker, second)
            await coordinator.sync_campaigns()

            run = coordinator.registry.get(second)
            await asyncio.wait_for(run.task, timeout=2)
            await asyncio.sleep(0)

            assert coordinator.registry.ids() == [first]
            orchestrator.stop_campaign.assert_called_once_with(second)
            await coordinator.stop()

        assert len(coordinator.registry) == 0

    @pytest.mark.asyncio
    async def test_cancel_unknown_campaign(self, mock_exchange, orchestrator, session_maker):
        coordinator = make_coordinator(mock_exchange, orchestrator, session_maker, StrategyFactory({}))
        assert coordinator.cancel_campaign(42) is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, mock_exchange, orchestrator, session_maker, make_campaign):
        await make_campaign()
        coordinator = make_coordinator(mock_exchange, orchestrator, session_maker, StrategyFactory({}))

        async def idle(campaign_id, cancel_event):
            await cancel_event.wait()

        with patch.object(coordinator, "run_campaign", side_effect=idle):
            await coordinator.start()
            task = coordinator.task
            await coordinator.start()
            assert coordinator.task is task

            for _ in range(50):
                if len(coordinator.registry):
                    break
                await asyncio.sleep(0.01)
            assert len(coordinator.registry) == 1
            assert coordinator.get_status()["running"] is True

            await coordinator.stop()

        assert coordinator.running is False
        assert coordinator.task is None


class TestCampaignRegistry:
    @pytest.mark.asyncio
    async def test_entry_removed_when_task_finishes(self):
        registry = CampaignRegistry()

        async def done():
            return None

        run = CampaignRun(campaign_id=3, task=asyncio.create_task(done()), cancel_event=asyncio.Event())
        registry.add(run)
        assert 3 in registry

        await run.task
        await asyncio.sleep(0)

        assert 3 not in registry
        assert registry.get(3) is None
