"""Producers: append outbox rows in the caller's transaction."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import OutboxEvent, Quote, utcnow
from ..database.repository import OutboxRepository
from .handlers import DECISIONS
from .models import OutboxEventType

logger = logging.getLogger(__name__)


async def enqueue_event(
    session: AsyncSession,
    event_type: OutboxEventType,
    payload: Dict[str, Any],
) -> OutboxEvent:
    """Append a pending event; it becomes visible when the caller commits."""
    return await OutboxRepository(session).insert(OutboxEventType(event_type).value, payload)


async def enqueue_stage_request(
    session: AsyncSession,
    contact_id: Optional[str],
    stage: str,
    reason: str,
) -> Optional[OutboxEvent]:
    """Request a CRM pipeline stage change; no-op without a contact."""
    if not contact_id:
        return None
    return await enqueue_event(
        session,
        OutboxEventType.PIPELINE_STAGE_REQUEST,
        {"contactId": contact_id, "stage": stage, "reason": reason},
    )


@dataclass
class DecisionResult:
    quote: Quote
    changed: bool
    event: Optional[OutboxEvent] = None


async def record_quote_decision(
    session: AsyncSession,
    quote_id: str,
    decision: str,
    notes: Optional[str] = None,
    source: str = "admin",
) -> Optional[DecisionResult]:
    """Apply an accept/decline decision and enqueue ``quote.decision``.

    The quote update and the outbox row share the caller's transaction.

    Returns:
        None if the quote does not exist. ``changed`` is False (and no event
        is enqueued) when the quote already has that status.

    Raises:
        ValueError: ``decision`` is not accepted/declined.
    """
    if decision not in DECISIONS:
        raise ValueError(f"Unsupported decision: {decision}")

    result = await session.execute(select(Quote).where(Quote.id == quote_id))
    quote = result.scalar_one_or_none()
    if quote is None:
        return None

    if quote.status == decision:
        logger.info(f"Quote {quote_id} already {decision}")
        return DecisionResult(quote=quote, changed=False)

    now = utcnow()
    quote.status = decision
    quote.decision_at = now
    quote.decision_notes = notes
    quote.updated_at = now
    await session.flush()

    payload: Dict[str, Any] = {"quoteId": quote.id, "decision": decision, "source": source}
    if notes:
        payload["notes"] = notes
    event = await enqueue_event(session, OutboxEventType.QUOTE_DECISION, payload)
    return DecisionResult(quote=quote, changed=True, event=event)
