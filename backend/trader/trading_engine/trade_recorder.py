"""
Round-trip trade recording

A Trade is created when a sell fills: it is matched to its buy through the
shared client order id. Sells of the same position that were cancelled
after a partial fill count toward its proceeds. Win rate and expectancy
are computed over the campaign's trades BEFORE this one.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trader.models import Order, Trade
from trader.precision import round_money
from trader.trading_engine.position_manager import find_filled_order

logger = logging.getLogger(__name__)


@dataclass
class TradeStats:
    win_rate: float  # Fraction 0..1
    avg_win: float
    avg_loss: float  # Magnitude
    expectancy: Optional[float]  # None without prior trades


def calculate_trade_stats(past_profit_losses: List[float]) -> TradeStats:
    """
    Win rate and expectancy over previous trades

    A trade with profit_loss >= 0 counts as a win.
    expectancy = win_rate * avg_win - (1 - win_rate) * avg_loss

    Examples:
        >>> calculate_trade_stats([10, -5, 20])
        TradeStats(win_rate=0.6666666666666666, avg_win=15.0, avg_loss=5.0, expectancy=8.33)
    """
    if not past_profit_losses:
        return TradeStats(win_rate=0.0, avg_win=0.0, avg_loss=0.0, expectancy=None)

    wins = [p for p in past_profit_losses if p >= 0]
    losses = [-p for p in past_profit_losses if p < 0]

    win_rate = len(wins) / len(past_profit_losses)
    avg_win = sum(wins) / len(wins) if wins else 0.0
    avg_loss = sum(losses) / len(losses) if losses else 0.0
    expectancy = round_money(win_rate * avg_win - (1 - win_rate) * avg_loss)

    return TradeStats(win_rate=win_rate, avg_win=avg_win, avg_loss=avg_loss, expectancy=expectancy)


async def get_past_profit_losses(db: AsyncSession, campaign_id: int) -> List[float]:
    query = select(Trade.profit_loss).where(Trade.campaign_id == campaign_id).order_by(Trade.id)
    result = await db.execute(query)
    return [p or 0.0 for p in result.scalars().all()]


async def get_partial_sells(db: AsyncSession, client_order_id: str) -> List[Order]:
    """Cancelled sells of a position that still executed part of their amount"""
    query = (
        select(Order)
        .where(
            Order.client_order_id == client_order_id,
            Order.side == "sell",
            Order.status == "cancelled",
            Order.executed_amount > 0,
        )
        .order_by(Order.id)
    )
    result = await db.execute(query)
    return list(result.scalars().all())


async def record_trade(db: AsyncSession, campaign_id: int, sell_order: Order) -> Optional[Trade]:
    """
    Create the Trade for a filled sell

    Args:
        db: Database session (caller commits)
        campaign_id: Campaign that owns both orders
        sell_order: The just-persisted filled sell row

    Returns:
        The Trade, or None when no filled buy shares the client order id
    """
    buy_order = await find_filled_order(db, sell_order.client_order_id, "buy")
    if buy_order is None:
        logger.error(
            f"[Trade] No filled buy for clientOrderId={sell_order.client_order_id} - trade not recorded"
        )
        return None

    partials = await get_partial_sells(db, sell_order.client_order_id)
    proceeds = (sell_order.total or 0.0) + sum(p.total or 0.0 for p in partials)
    profit_loss = round_money(proceeds - (buy_order.total or 0.0))
    fees = round_money((sell_order.fee or 0.0) + (buy_order.fee or 0.0) + sum(p.fee or 0.0 for p in partials))
    stats = calculate_trade_stats(await get_past_profit_losses(db, campaign_id))

    trade = Trade(
        campaign_id=campaign_id,
        buy_order_id=buy_order.id,
        sell_order_id=sell_order.id,
        client_order_id=sell_order.client_order_id,
        symbol=sell_order.symbol,
        profit_loss=profit_loss,
        fees=fees,
        win_rate=round_money(stats.win_rate * 100),
        avg_win=round_money(stats.avg_win),
        avg_loss=round_money(stats.avg_loss),
        expectancy=stats.expectancy,
    )
    db.add(trade)
    await db.flush()

    logger.info(
        f"[Trade] 💰 profitLoss={profit_loss} expectancy={stats.expectancy} winRate={round_money(stats.win_rate * 100)}%"
    )
    return trade
