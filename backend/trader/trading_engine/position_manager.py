"""
Campaign ledger utilities for trading engine

Handles campaign and order persistence:
- Loading campaigns and their open position
- Recording order transitions exactly once
- Applying order transitions and fills to the campaign

None of these commit; the caller owns the transaction.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from trader.exceptions import CampaignNotFoundError
from trader.models import Campaign, Order
from trader.precision import round_money
from trader.schemas import OrderResult, TradePlan

logger = logging.getLogger(__name__)


async def get_campaign(db: AsyncSession, campaign_id: int) -> Campaign:
    campaign = await db.get(Campaign, campaign_id)
    if campaign is None:
        raise CampaignNotFoundError(campaign_id)
    return campaign


async def get_active_campaign_ids(db: AsyncSession) -> List[int]:
    query = select(Campaign.id).where(Campaign.status == "active").order_by(Campaign.id)
    result = await db.execute(query)
    return list(result.scalars().all())


def get_active_order(campaign: Campaign) -> Optional[OrderResult]:
    if not campaign.active_order:
        return None
    return OrderResult.model_validate(campaign.active_order)


def get_trade_plan(campaign: Campaign) -> Optional[TradePlan]:
    if not campaign.trade_plan:
        return None
    return TradePlan.model_validate(campaign.trade_plan)


async def find_order(db: AsyncSession, order: OrderResult) -> Optional[Order]:
    """Persisted row for this exact transition, if any"""
    query = select(Order).where(
        Order.order_id == order.order_id,
        Order.client_order_id == order.client_order_id,
        Order.side == order.side,
        Order.status == order.status,
    )
    result = await db.execute(query)
    return result.scalars().first()


async def find_filled_order(db: AsyncSession, client_order_id: str, side: str) -> Optional[Order]:
    query = (
        select(Order)
        .where(Order.client_order_id == client_order_id, Order.side == side, Order.status == "filled")
        .order_by(Order.id.desc())
    )
    result = await db.execute(query)
    return result.scalars().first()


async def record_order(db: AsyncSession, campaign_id: int, order: OrderResult) -> Optional[Order]:
    """
    Persist an order transition unless it is already recorded

    Must be the first write of the caller's transaction: a lost insert race
    rolls the session back.

    Returns:
        The new Order row, or None when this (order_id, client_order_id,
        side, status) was already recorded
    """
    if await find_order(db, order) is not None:
        logger.info(
            f"Order transition already recorded: orderId={order.order_id} side={order.side} status={order.status}"
        )
        return None

    row = Order(
        campaign_id=campaign_id,
        order_id=order.order_id,
        client_order_id=order.client_order_id,
        symbol=order.symbol,
        side=order.side,
        status=order.status,
        order_price=order.order_price,
        executed_price=order.executed_price,
        order_amount=order.order_amount,
        executed_amount=order.executed_amount,
        remaining_amount=order.remaining_amount,
        fee=order.fee,
        fills=[f.model_dump(mode="json") for f in order.trades],
        cash_amount=order.cash_amount,
        total=order.total,
        reason=order.reason or None,
        submitted_at=order.submitted_at,
        filled_at=order.filled_at,
    )
    db.add(row)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        logger.info(f"Lost race recording orderId={order.order_id} side={order.side} status={order.status}")
        return None
    return row


def holds_position_for(campaign: Campaign, order: OrderResult) -> bool:
    """True if the order shares the client order id of the campaign's open position"""
    active = campaign.active_order
    return bool(active) and active.get("client_order_id") == order.client_order_id


def apply_order_to_campaign(campaign: Campaign, order: OrderResult):
    """
    Active order / trade plan clearing rule

    - placed or filled: the order becomes the active order
    - cancelled buy: no position was opened, drop order and plan
    - cancelled sell: the position is still open, keep the cancelled view
    """
    snapshot = order.model_dump(mode="json")
    if order.status != "cancelled":
        campaign.active_order = snapshot
    elif order.side == "buy":
        campaign.active_order = None
        campaign.trade_plan = None
    else:
        campaign.active_order = snapshot


def apply_filled_order(campaign: Campaign, order: OrderResult, min_trade_balance: float) -> bool:
    """
    Move cash and coins for a filled order

    A filled sell closes the position. If what is left is below the
    exchange's minimum tradable notional the campaign goes inactive.

    Returns:
        True if the campaign was deactivated
    """
    if order.side == "buy":
        campaign.balance = round_money(campaign.balance - order.total)
        campaign.coin_symbol = order.symbol
        campaign.coin_amount = order.executed_amount
        logger.info(
            f"[Campaign {campaign.id}] Bought {order.executed_amount} {order.symbol} for {order.total}, "
            f"balance={campaign.balance}"
        )
        return False

    campaign.balance = round_money(campaign.balance + order.total)
    campaign.profit_loss = round_money(campaign.balance - campaign.initial_balance)
    campaign.profit_loss_pct = (
        round_money((campaign.balance / campaign.initial_balance - 1) * 100) if campaign.initial_balance else 0.0
    )
    campaign.coin_symbol = None
    campaign.coin_amount = 0.0
    campaign.trade_plan = None
    campaign.active_order = None

    logger.info(
        f"[Campaign Balance] initialBalance={campaign.initial_balance} balance={campaign.balance} "
        f"profitLoss={campaign.profit_loss} ({campaign.profit_loss_pct}%)"
    )

    if campaign.balance < min_trade_balance:
        campaign.status = "inactive"
        logger.warning(
            f"[Campaign {campaign.id}] Balance {campaign.balance} below minimum {min_trade_balance} - campaign inactive"
        )
        return True
    return False


def apply_partial_sell(campaign: Campaign, order: OrderResult):
    """
    Credit the executed part of a sell that ended cancelled

    The position stays open with the coins that were not sold.
    """
    campaign.balance = round_money(campaign.balance + order.total)
    campaign.coin_amount = max(round((campaign.coin_amount or 0.0) - order.executed_amount, 8), 0.0)
    logger.info(
        f"[Campaign {campaign.id}] Partial sell of {order.executed_amount} {order.symbol} for {order.total} "
        f"before {order.order_id} was cancelled, balance={campaign.balance} coins left={campaign.coin_amount}"
    )


async def store_trade_plan(db: AsyncSession, campaign_id: int, plan: TradePlan):
    campaign = await get_campaign(db, campaign_id)
    campaign.trade_plan = plan.model_dump(mode="json")

