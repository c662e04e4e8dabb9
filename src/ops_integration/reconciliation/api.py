"""API endpoint for triggering payment reconciliation."""

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import TRIGGER_RATE_LIMIT, limiter, verify_api_key
from ..config import Settings, get_settings
from ..database import get_db
from .charge_fetcher import ChargeFetcherBase, get_charge_fetcher
from .models import ProviderError
from .service import ReconciliationRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/payments", tags=["reconciliation"])


class ReconcileRequest(BaseModel):
    """Request body for a reconciliation run; ``windowDays`` outside (0, 90] uses 14."""
    window_days: Optional[Any] = Field(default=None, alias="windowDays")


class ReconcileResponse(BaseModel):
    ok: bool = True
    fetched: int
    upserted: int
    inserted: int
    updated: int
    matched: int
    window_days: int
    window_start: datetime


def charge_fetcher_dependency(settings: Settings = Depends(get_settings)) -> ChargeFetcherBase:
    """Dependency returning the Stripe charge fetcher."""
    try:
        return get_charge_fetcher("stripe", api_key=settings.stripe_api_key)
    except ValueError:
        logger.error("Stripe is not configured; cannot reconcile")
        raise HTTPException(status_code=500, detail="stripe_not_configured")


@router.post("/reconcile", response_model=ReconcileResponse)
@limiter.limit(TRIGGER_RATE_LIMIT)
async def reconcile_payments(
    request: Request,
    body: Optional[ReconcileRequest] = None,
    db: AsyncSession = Depends(get_db),
    fetcher: ChargeFetcherBase = Depends(charge_fetcher_dependency),
    settings: Settings = Depends(get_settings),
    api_key: str = Depends(verify_api_key),
):
    """Import recent provider charges into payment records."""
    window_days = body.window_days if body is not None else settings.reconcile_window_days
    runner = ReconciliationRunner(db, fetcher=fetcher, match_window_days=settings.match_window_days)
    try:
        result = await runner.reconcile(window_days)
    except (ProviderError, ConnectionError) as e:
        logger.error(f"Reconciliation aborted by provider failure: {e}")
        raise HTTPException(status_code=502, detail="reconcile_failed")
    except SQLAlchemyError:
        logger.exception("Reconciliation aborted by a store failure")
        raise HTTPException(status_code=500, detail="reconcile_failed")
    return ReconcileResponse(**result.model_dump())
