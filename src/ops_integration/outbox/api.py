"""Admin endpoints for triggering and inspecting outbox dispatch."""

import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..auth import TRIGGER_RATE_LIMIT, ADMIN_RATE_LIMIT, limiter, verify_api_key
from ..calendar import CalendarClientBase, get_calendar_client
from ..config import Settings, get_settings
from ..database import OutboxRepository, get_db, get_session_factory
from ..notifications import NotifierBase, get_notifier
from .dispatcher import OutboxDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/outbox", tags=["outbox"])


class DispatchRequest(BaseModel):
    """Request body for a manual dispatch; ``limit`` is clamped server side."""
    limit: Optional[Any] = Field(default=None, description="Batch size, 1-50 (default 10)")


class DispatchResponse(BaseModel):
    ok: bool = True
    total: int
    succeeded: int
    failed: int
    skipped: int
    retried: int
    dead_lettered: int
    lost_claims: int = 0


class OutboxEventResponse(BaseModel):
    id: str
    type: str
    payload: Optional[Any] = None
    payload_raw: Optional[str] = Field(default=None, description="Stored payload text when it is not valid JSON")
    status: str
    attempts: int
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    processed_at: Optional[str] = None


@router.post("/dispatch", response_model=DispatchResponse)
@limiter.limit(TRIGGER_RATE_LIMIT)
async def dispatch_outbox(
    request: Request,
    body: Optional[DispatchRequest] = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    calendar: CalendarClientBase = Depends(get_calendar_client),
    notifier: NotifierBase = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
    api_key: str = Depends(verify_api_key),
):
    """Run one dispatch batch now and report its statistics."""
    limit = body.limit if body is not None else None
    dispatcher = OutboxDispatcher(session_factory, calendar=calendar, notifier=notifier, settings=settings)
    try:
        stats = await dispatcher.dispatch_batch(limit)
    except SQLAlchemyError:
        logger.exception("Outbox dispatch aborted by a store failure")
        raise HTTPException(status_code=500, detail="outbox_failed")
    return DispatchResponse(**stats.model_dump())


@router.post("/{event_id}/reset", response_model=OutboxEventResponse)
@limiter.limit(ADMIN_RATE_LIMIT)
async def reset_outbox_event(
    request: Request,
    event_id: str,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Return a processed or dead-lettered event to pending with a fresh attempt budget.

    An event a dispatcher is working on right now cannot be reset (409).
    """
    repo = OutboxRepository(db)
    if not await repo.reset(event_id):
        if await repo.get_by_id(event_id) is None:
            raise HTTPException(status_code=404, detail="Outbox event not found")
        raise HTTPException(status_code=409, detail="outbox_event_in_progress")
    event = await repo.get_by_id(event_id)
    await db.refresh(event)
    return OutboxEventResponse(**event.to_dict())


@router.get("/failed", response_model=List[OutboxEventResponse])
@limiter.limit(ADMIN_RATE_LIMIT)
async def list_failed_events(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """List dead-lettered events, newest first."""
    events = await OutboxRepository(db).list_failed(limit)
    return [OutboxEventResponse(**event.to_dict()) for event in events]
