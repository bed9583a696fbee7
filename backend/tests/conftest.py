"""
Shared test fixtures for the campaign trader tests.

Provides reusable fixtures for:
- Async database engine + session factory (file-backed SQLite per test)
- Mock exchange gateway
- Campaign, candle and order factories
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from trader.schemas import Candle, OrderResult, RateLimitBudget


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def async_engine(tmp_path):
    """Async SQLite engine on a temp file so every session sees the same data."""
    from trader.models import Base

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'trader.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def make_campaign(session_maker):
    """Persist a campaign and return its id."""
    from trader.models import Campaign

    async def _make(balance=100.0, status="active", quote="USDT", **fields):
        async with session_maker() as db:
            campaign = Campaign(
                name=fields.pop("name", "test campaign"),
                quote_currency=quote,
                status=status,
                initial_balance=fields.pop("initial_balance", balance),
                balance=balance,
                **fields,
            )
            db.add(campaign)
            await db.commit()
            return campaign.id

    return _make


# ---------------------------------------------------------------------------
# Mock exchange gateway
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_exchange():
    """ExchangeGateway double; async methods are AsyncMocks, sync ones MagicMocks."""
    exchange = MagicMock()
    exchange.place_order = AsyncMock()
    exchange.cancel_order = AsyncMock()
    exchange.get_order = AsyncMock()
    exchange.get_candles = AsyncMock(return_value=[])
    exchange.get_tick_size = AsyncMock(return_value=0.1)
    exchange.get_min_notional = AsyncMock(return_value=0.0)
    exchange.round_to_tick = AsyncMock(side_effect=lambda symbol, price: price)
    exchange.round_to_lot_size = AsyncMock(side_effect=lambda symbol, amount: round(amount, 4))
    exchange.get_balance = AsyncMock(return_value=1000.0)
    exchange.remaining_rate_limit_budget = MagicMock(
        return_value=RateLimitBudget(used=0, limit=6000, reset_in_seconds=30)
    )
    exchange.subscribe_price_ticks = MagicMock()
    return exchange


# ---------------------------------------------------------------------------
# Sample data factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_candle():
    """Build a Candle from OHLC values; times default to a 15m slot."""

    def _make(open_=100.0, high=101.0, low=99.0, close=100.5, open_time=None, minutes=15, volume=10.0):
        open_time = open_time or datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)
        return Candle(
            open_time=open_time,
            close_time=open_time + timedelta(minutes=minutes) - timedelta(milliseconds=1),
            open=open_,
            high=high,
            low=low,
            close=close,
            volume=volume,
        )

    return _make


@pytest.fixture
def make_order():
    """Build an OrderResult with sensible buy defaults."""

    def _make(side="buy", status="placed", **fields):
        values = {
            "order_id": "1001",
            "client_order_id": "cid-1",
            "symbol": "BTCUSDT",
            "order_price": 101.1,
            "order_amount": 1.0,
        }
        values.update(fields)
        return OrderResult(side=side, status=status, **values)

    return _make
