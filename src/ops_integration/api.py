"""FastAPI trigger surface for the integration core."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import ADMIN_RATE_LIMIT, limiter, verify_api_key
from .database import close_db, get_db, init_db
from .outbox.api import router as outbox_router
from .outbox.producers import record_quote_decision
from .reconciliation.api import router as reconciliation_router
from .services import PaymentRecordService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await close_db()


app = FastAPI(title="Ops Integration Core", lifespan=lifespan)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded for {request.url.path}")
    return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})


payments_router = APIRouter(prefix="/admin/payments", tags=["payments"])
quotes_router = APIRouter(prefix="/admin/quotes", tags=["quotes"])


class AttachAppointmentBody(BaseModel):
    appointment_id: str = Field(..., alias="appointmentId", min_length=1, max_length=36)


class QuoteDecisionBody(BaseModel):
    decision: Literal["accepted", "declined"]
    notes: Optional[str] = Field(default=None, max_length=2000)


class QuoteDecisionResponse(BaseModel):
    ok: bool = True
    quote_id: str
    status: str
    changed: bool
    decision_at: Optional[datetime] = None
    decision_notes: Optional[str] = None


@payments_router.post("/{payment_id}/attach")
@limiter.limit(ADMIN_RATE_LIMIT)
async def attach_payment(
    request: Request,
    payment_id: str,
    body: AttachAppointmentBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Link a payment record to an appointment; reconciliation keeps the link."""
    try:
        payment = await PaymentRecordService(db).attach_appointment(payment_id, body.appointment_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ok": True, "payment": payment.to_dict()}


@payments_router.post("/{payment_id}/detach")
@limiter.limit(ADMIN_RATE_LIMIT)
async def detach_payment(
    request: Request,
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Unlink a payment record; reconciliation will not re-link it."""
    try:
        payment = await PaymentRecordService(db).detach_appointment(payment_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ok": True, "payment": payment.to_dict()}


@quotes_router.post("/{quote_id}/decision", response_model=QuoteDecisionResponse)
@limiter.limit(ADMIN_RATE_LIMIT)
async def decide_quote(
    request: Request,
    quote_id: str,
    body: QuoteDecisionBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Record an admin accept/decline and enqueue the ``quote.decision`` event."""
    result = await record_quote_decision(db, quote_id, body.decision, notes=body.notes, source="admin")
    if result is None:
        raise HTTPException(status_code=404, detail="Quote not found")
    quote = result.quote
    return QuoteDecisionResponse(
        quote_id=quote.id,
        status=quote.status,
        changed=result.changed,
        decision_at=quote.decision_at,
        decision_notes=quote.decision_notes,
    )


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


app.include_router(outbox_router)
app.include_router(reconciliation_router)
app.include_router(payments_router)
app.include_router(quotes_router)
