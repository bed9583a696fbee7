"""Trading models: campaigns, orders, trades, events."""

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)

from trader.database import Base


class Campaign(Base):
    """
    One running instance of a strategy against a single pair.

    Owns at most one active order and one trade plan at a time. Both are
    stored as JSON snapshots (OrderResult / TradePlan dumps) so a restarted
    process can pick the position back up. Only the order orchestrator
    mutates a campaign after creation.
    """

    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    strategy_name = Column(String, default="rsi_over_sma", nullable=False)
    quote_currency = Column(String, default="USDT", nullable=False)  # USDT, BUSD, USDC
    status = Column(String, default="active", index=True)  # active, inactive

    # Money (quote currency)
    initial_balance = Column(Float, nullable=False)
    balance = Column(Float, nullable=False)
    profit_loss = Column(Float, default=0.0)
    profit_loss_pct = Column(Float, default=0.0)

    # Open position
    coin_symbol = Column(String, nullable=True)  # Pair currently held, e.g. "BTCUSDT"
    coin_amount = Column(Float, default=0.0)
    active_order = Column(JSON, nullable=True)  # OrderResult snapshot
    trade_plan = Column(JSON, nullable=True)  # TradePlan snapshot while the buy is pending/open

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Order(Base):
    """
    Persisted order status transition.

    One row per distinct (order_id, client_order_id, side, status). The unique
    constraint is the idempotency boundary between watchers racing on the same
    order: the second insert fails and its caller skips every side effect.
    """

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False, index=True)

    order_id = Column(String, nullable=False, default="")  # Exchange order id
    client_order_id = Column(String, nullable=False, default="", index=True)  # Shared by a buy and its exit
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)  # buy, sell
    status = Column(String, nullable=False)  # placed, filled, cancelled

    order_price = Column(Float, default=0.0)
    executed_price = Column(Float, default=0.0)
    order_amount = Column(Float, default=0.0)
    executed_amount = Column(Float, default=0.0)
    remaining_amount = Column(Float, default=0.0)
    fee = Column(Float, default=0.0)  # Quote currency
    fills = Column(JSON, nullable=True)  # List of OrderFill dumps
    cash_amount = Column(Float, default=0.0)  # Excludes fees
    total = Column(Float, default=0.0)  # Includes fees
    reason = Column(String, nullable=True)

    submitted_at = Column(DateTime, nullable=True)
    filled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("order_id", "client_order_id", "side", "status", name="uq_order_transition"),
    )


class Trade(Base):
    """Completed round trip: a filled sell matched to its filled buy by client_order_id"""

    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False, index=True)
    buy_order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    sell_order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    client_order_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False)

    profit_loss = Column(Float, default=0.0)  # sell.total - buy.total
    fees = Column(Float, default=0.0)

    # Rolling stats over the campaign's PRIOR trades
    win_rate = Column(Float, default=0.0)  # Percent
    avg_win = Column(Float, default=0.0)
    avg_loss = Column(Float, default=0.0)  # Magnitude
    expectancy = Column(Float, nullable=True)  # None for the first trade

    created_at = Column(DateTime, default=datetime.utcnow)


class Event(Base):
    """Append-only audit record, one per executed buy/cancel_buy/sell decision"""

    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False, index=True)
    action = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
