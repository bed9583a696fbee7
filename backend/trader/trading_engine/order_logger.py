"""
Order logging utilities for trading engine

Handles the campaign audit trail: one Event per executed buy, cancel_buy
or sell decision, with the strategy payload that caused it.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trader.models import Event

logger = logging.getLogger(__name__)


async def log_event(
    db: AsyncSession,
    campaign_id: int,
    action: str,
    payload: Optional[Dict[str, Any]] = None,
) -> Event:
    """
    Append an audit Event (caller commits)

    Args:
        db: Database session
        campaign_id: Campaign the decision belongs to
        action: "buy", "cancel_buy" or "sell"
        payload: JSON-serializable decision payload
    """
    event = Event(campaign_id=campaign_id, action=action, payload=payload or {})
    db.add(event)
    await db.flush()
    logger.debug(f"[Campaign {campaign_id}] Event logged: {action}")
    return event


async def get_events(db: AsyncSession, campaign_id: int, limit: int = 100):
    query = select(Event).where(Event.campaign_id == campaign_id).order_by(Event.timestamp.desc(), Event.id.desc()).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())
