"""
Outbox event handlers.

Every handler receives a :class:`HandlerContext` bound to the row's own
session and returns a :class:`HandlerOutcome`. Handlers must be safe to run
more than once for the same event: state changes are applied only when they
differ from what is stored, and side effects that cannot be repeated
(notifications, notes) are guarded by a side-effect receipt.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..calendar import (
    AppointmentCalendarPayload,
    CalendarAddress,
    CalendarClientBase,
    CalendarContact,
    NullCalendarClient,
    create_calendar_event_with_retry,
    update_calendar_event_with_retry,
)
from ..config import Settings
from ..database.models import (
    Appointment,
    AppointmentNote,
    AppointmentStatus,
    Contact,
    CrmPipeline,
    Lead,
    OutboxEvent,
    PipelineStage,
    Property,
    Quote,
    QuoteStatus,
    utcnow,
)
from ..database.repository import AppointmentRepository, SideEffectReceiptRepository
from ..notifications import (
    AppointmentSummary,
    EstimateNotification,
    LoggingNotifier,
    NotifierBase,
    QuoteNotification,
    SchedulingPreferences,
    format_minor_units,
)
from ..retry import RetryOptions
from .models import HandlerOutcome, MalformedPayloadError, OutboxEventType

logger = logging.getLogger(__name__)

# Side-effect receipt names
ESTIMATE_CONFIRMATION = "estimate.confirmation"
QUOTE_SENT_NOTICE = "quote.sent.notice"
QUOTE_DECISION_NOTICE = "quote.decision.notice"
PAYMENT_NOTE = "payment.note"

DECISIONS = (QuoteStatus.ACCEPTED.value, QuoteStatus.DECLINED.value)
DECISION_SOURCES = ("customer", "admin")


@dataclass
class HandlerContext:
    """Collaborators available to a handler for one outbox row."""
    session: AsyncSession
    calendar: CalendarClientBase = field(default_factory=NullCalendarClient)
    notifier: NotifierBase = field(default_factory=LoggingNotifier)
    settings: Settings = field(default_factory=Settings)

    @property
    def retry_options(self) -> RetryOptions:
        return RetryOptions(
            attempts=self.settings.calendar_retry_attempts,
            delay_ms=self.settings.calendar_retry_delay_ms,
        )

    @property
    def receipts(self) -> SideEffectReceiptRepository:
        return SideEffectReceiptRepository(self.session)

    async def once(self, event: OutboxEvent, effect: str, action: Callable[[], Awaitable[None]]) -> bool:
        """Run ``action`` unless this event already recorded ``effect``.

        Returns:
            True if the action ran.
        """
        if await self.receipts.exists(event.id, effect):
            logger.info(f"Outbox event {event.id}: {effect} already done")
            return False
        await action()
        await self.receipts.record(event.id, effect)
        return True


Handler = Callable[[HandlerContext, OutboxEvent], Awaitable[HandlerOutcome]]


# Payload helpers

def _payload(event: OutboxEvent) -> Dict[str, Any]:
    try:
        payload = event.payload
    except ValueError as exc:
        raise MalformedPayloadError(f"Payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Payload must be an object")
    return payload


def _optional_str(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _required_str(payload: Dict[str, Any], key: str) -> str:
    value = _optional_str(payload, key)
    if value is None:
        raise MalformedPayloadError(f"Missing required field '{key}'")
    return value


def _services(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item.strip()]


def _scheduling(value: Any) -> Dict[str, Optional[str]]:
    if not isinstance(value, dict):
        return {}
    keys = {
        "preferredDate": "preferred_date",
        "alternateDate": "alternate_date",
        "timeWindow": "time_window",
    }
    return {
        name: value[key]
        for key, name in keys.items()
        if isinstance(value.get(key), str)
    }


def _site_base(settings: Settings) -> str:
    return settings.site_url.rstrip("/")


def build_reschedule_url(settings: Settings, appointment_id: str, token: str) -> str:
    query = urlencode({"appointmentId": appointment_id, "token": token})
    return f"{_site_base(settings)}/schedule?{query}"


def build_quote_share_url(settings: Settings, token: str) -> str:
    return f"{_site_base(settings)}/quote/{token}"


def _contact_card(contact: Optional[Contact]) -> CalendarContact:
    if contact is None:
        return CalendarContact(name="Customer")
    return CalendarContact(
        name=contact.display_name,
        email=contact.email,
        phone=contact.phone_e164 or contact.phone,
    )


# Notification builders

async def load_estimate_notification(
    ctx: HandlerContext,
    appointment_id: str,
    services: Optional[List[str]] = None,
    scheduling: Optional[Dict[str, Optional[str]]] = None,
    notes: Optional[str] = None,
    reschedule_url: Optional[str] = None,
) -> Optional[EstimateNotification]:
    """Assemble the confirmation payload for an appointment, or None if it is gone."""
    result = await ctx.session.execute(
        select(Appointment, Contact, Property, Lead)
        .outerjoin(Contact, Appointment.contact_id == Contact.id)
        .outerjoin(Property, Appointment.property_id == Property.id)
        .outerjoin(Lead, Appointment.lead_id == Lead.id)
        .where(Appointment.id == appointment_id)
    )
    row = result.first()
    if row is None:
        logger.warning(f"Appointment {appointment_id} not found")
        return None
    appointment, contact, prop, lead = row

    stored_scheduling: Dict[str, Optional[str]] = {}
    if lead is not None and lead.form_payload:
        stored_scheduling = _scheduling(lead.form_payload.get("scheduling"))
    stored_scheduling.update(scheduling or {})

    if prop is not None:
        location = CalendarAddress(
            address_line1=prop.address_line1,
            city=prop.city or "",
            state=prop.state or "",
            postal_code=prop.postal_code or "",
        )
    else:
        location = CalendarAddress(address_line1="Undisclosed address")

    status = appointment.status
    if status not in {s.value for s in AppointmentStatus}:
        status = AppointmentStatus.REQUESTED.value

    return EstimateNotification(
        lead_id=appointment.lead_id,
        services=services or (lead.services if lead is not None else []),
        contact=_contact_card(contact),
        location=location,
        scheduling=SchedulingPreferences(**stored_scheduling),
        appointment=AppointmentSummary(
            id=appointment.id,
            start_at=appointment.start_at,
            duration_minutes=appointment.duration_minutes or 60,
            travel_buffer_minutes=appointment.travel_buffer_minutes or 30,
            status=status,
            reschedule_url=reschedule_url
            or build_reschedule_url(ctx.settings, appointment.id, appointment.reschedule_token),
            calendar_event_id=appointment.calendar_event_id,
        ),
        notes=notes if notes is not None else (lead.notes if lead is not None else None),
    )


async def load_quote_notification(
    ctx: HandlerContext,
    quote_id: str,
    share_token: Optional[str] = None,
    notes: Optional[str] = None,
) -> Optional[QuoteNotification]:
    """Assemble the quote message payload, or None if the quote has no share link."""
    result = await ctx.session.execute(
        select(Quote, Contact)
        .outerjoin(Contact, Quote.contact_id == Contact.id)
        .where(Quote.id == quote_id)
    )
    row = result.first()
    if row is None:
        logger.warning(f"Quote {quote_id} not found")
        return None
    quote, contact = row

    token = share_token or quote.share_token
    if not token:
        logger.warning(f"Quote {quote_id} has no share token")
        return None

    return QuoteNotification(
        quote_id=quote.id,
        services=quote.services,
        contact=_contact_card(contact),
        total=quote.total or 0,
        deposit_due=quote.deposit_due or 0,
        balance_due=quote.balance_due or 0,
        share_url=build_quote_share_url(ctx.settings, token),
        expires_at=quote.expires_at,
        notes=notes,
    )


def _calendar_payload(notification: EstimateNotification) -> Optional[AppointmentCalendarPayload]:
    appointment = notification.appointment
    if appointment.start_at is None:
        return None
    return AppointmentCalendarPayload(
        appointment_id=appointment.id,
        start_at=appointment.start_at,
        duration_minutes=appointment.duration_minutes,
        travel_buffer_minutes=appointment.travel_buffer_minutes,
        services=notification.services,
        notes=notification.notes,
        contact=notification.contact,
        location=notification.location,
        reschedule_url=appointment.reschedule_url,
    )


async def _store_calendar_event_id(ctx: HandlerContext, appointment_id: str, event_id: str) -> None:
    appointment = await AppointmentRepository(ctx.session).get_by_id(appointment_id)
    if appointment is not None:
        appointment.calendar_event_id = event_id
        appointment.updated_at = utcnow()
        await ctx.session.flush()


async def ensure_calendar_event(ctx: HandlerContext, notification: EstimateNotification) -> Optional[str]:
    """Create the appointment's calendar event unless one is already linked."""
    existing = notification.appointment.calendar_event_id
    if existing:
        return existing

    payload = _calendar_payload(notification)
    if payload is None:
        return None

    event_id = await create_calendar_event_with_retry(ctx.calendar, payload, ctx.retry_options)
    if not event_id:
        logger.warning(f"Calendar create skipped for appointment {notification.appointment.id}")
        return None

    await _store_calendar_event_id(ctx, notification.appointment.id, event_id)
    notification.appointment.calendar_event_id = event_id
    return event_id


async def sync_calendar_event(ctx: HandlerContext, notification: EstimateNotification) -> Optional[str]:
    """Push a reschedule to the calendar; recreate the event if the update does not take."""
    current = notification.appointment.calendar_event_id
    payload = _calendar_payload(notification)
    if payload is None:
        return current

    if current:
        if await update_calendar_event_with_retry(ctx.calendar, current, payload, ctx.retry_options):
            return current
        logger.warning(
            f"Calendar update failed for appointment {notification.appointment.id} "
            f"(event {current}); creating a new event"
        )

    event_id = await create_calendar_event_with_retry(ctx.calendar, payload, ctx.retry_options)
    if not event_id:
        logger.warning(f"Calendar create after failed update skipped for appointment {notification.appointment.id}")
        return None

    await _store_calendar_event_id(ctx, notification.appointment.id, event_id)
    notification.appointment.calendar_event_id = event_id
    return event_id


# Handlers

async def handle_estimate_requested(ctx: HandlerContext, event: OutboxEvent) -> HandlerOutcome:
    payload = _payload(event)
    notification = await load_estimate_notification(
        ctx,
        _required_str(payload, "appointmentId"),
        services=_services(payload.get("services")),
        scheduling=_scheduling(payload.get("scheduling")),
        notes=_optional_str(payload, "notes"),
    )
    if notification is None:
        return HandlerOutcome.SKIPPED

    await ensure_calendar_event(ctx, notification)
    await ctx.once(
        event,
        ESTIMATE_CONFIRMATION,
        lambda: ctx.notifier.send_estimate_confirmation(notification, "requested"),
    )
    return HandlerOutcome.PROCESSED


async def handle_estimate_rescheduled(ctx: HandlerContext, event: OutboxEvent) -> HandlerOutcome:
    payload = _payload(event)
    notification = await load_estimate_notification(
        ctx,
        _required_str(payload, "appointmentId"),
        services=_services(payload.get("services")),
        reschedule_url=_optional_str(payload, "rescheduleUrl"),
    )
    if notification is None:
        return HandlerOutcome.SKIPPED

    await sync_calendar_event(ctx, notification)
    await ctx.once(
        event,
        ESTIMATE_CONFIRMATION,
        lambda: ctx.notifier.send_estimate_confirmation(notification, "rescheduled"),
    )
    return HandlerOutcome.PROCESSED


async def handle_lead_confirmation(ctx: HandlerContext, event: OutboxEvent) -> HandlerOutcome:
    """``lead.created`` and ``estimate.status_changed``: confirm the lead's appointment."""
    payload = _payload(event)
    lead_id = _required_str(payload, "leadId")

    appointment = await AppointmentRepository(ctx.session).first_for_lead(lead_id)
    if appointment is None:
        logger.info(f"Outbox event {event.id}: lead {lead_id} has no appointment")
        return HandlerOutcome.SKIPPED

    notification = await load_estimate_notification(
        ctx,
        appointment.id,
        services=_services(payload.get("services")),
        scheduling=_scheduling(payload.get("scheduling")),
        notes=_optional_str(payload, "notes"),
    )
    if notification is None:
        return HandlerOutcome.SKIPPED

    await ctx.once(
        event,
        ESTIMATE_CONFIRMATION,
        lambda: ctx.notifier.send_estimate_confirmation(notification, "requested"),
    )
    return HandlerOutcome.PROCESSED


async def handle_quote_sent(ctx: HandlerContext, event: OutboxEvent) -> HandlerOutcome:
    payload = _payload(event)
    notification = await load_quote_notification(
        ctx,
        _required_str(payload, "quoteId"),
        share_token=_optional_str(payload, "shareToken"),
    )
    if notification is None:
        return HandlerOutcome.SKIPPED

    await ctx.once(event, QUOTE_SENT_NOTICE, lambda: ctx.notifier.send_quote_sent(notification))
    return HandlerOutcome.PROCESSED


async def handle_quote_decision(ctx: HandlerContext, event: OutboxEvent) -> HandlerOutcome:
    """Apply an accept/decline decision to the quote and notify.

    Redelivery is a no-op: the status is only written when it differs and
    the notification is receipted per event.
    """
    payload = _payload(event)
    quote_id = _required_str(payload, "quoteId")
    decision = _required_str(payload, "decision").lower()
    if decision not in DECISIONS:
        raise MalformedPayloadError(f"Unsupported decision '{decision}'")
    source = _optional_str(payload, "source")
    if source not in DECISION_SOURCES:
        source = "customer"
    notes = _optional_str(payload, "notes")

    result = await ctx.session.execute(select(Quote).where(Quote.id == quote_id))
    quote = result.scalar_one_or_none()
    if quote is None:
        logger.warning(f"Outbox event {event.id}: quote {quote_id} not found")
        return HandlerOutcome.SKIPPED

    if quote.status != decision:
        quote.status = decision
        quote.decision_at = utcnow()
        if notes is not None:
            quote.decision_notes = notes
        quote.updated_at = utcnow()
        await ctx.session.flush()
        logger.info(f"Quote {quote_id} marked {decision} ({source})")

    notification = await load_quote_notification(ctx, quote_id, notes=notes)
    if notification is not None:
        notification.decision = decision
        notification.source = source
        await ctx.once(
            event,
            QUOTE_DECISION_NOTICE,
            lambda: ctx.notifier.send_quote_decision(notification),
        )
    return HandlerOutcome.PROCESSED


async def handle_payment_recorded(ctx: HandlerContext, event: OutboxEvent) -> HandlerOutcome:
    payload = _payload(event)
    appointment_id = _required_str(payload, "appointmentId")

    appointments = AppointmentRepository(ctx.session)
    appointment = await appointments.get_by_id(appointment_id)
    if appointment is None:
        logger.warning(f"Outbox event {event.id}: appointment {appointment_id} not found")
        return HandlerOutcome.SKIPPED

    amount = payload.get("amountCents")
    if isinstance(amount, bool) or not isinstance(amount, int):
        amount = None
    method = _optional_str(payload, "method")
    source = _optional_str(payload, "source") or "system"

    parts = [f"Payment recorded {format_minor_units(amount, _optional_str(payload, 'currency'))}"]
    if method:
        parts.append(f"Method: {method}")
    parts.append(f"Source: {source}")
    body = " | ".join(parts)

    async def add_note() -> None:
        ctx.session.add(AppointmentNote(appointment_id=appointment_id, body=body))
        await ctx.session.flush()

    await ctx.once(event, PAYMENT_NOTE, add_note)
    await appointments.touch(appointment)
    return HandlerOutcome.PROCESSED


async def handle_pipeline_stage_request(ctx: HandlerContext, event: OutboxEvent) -> HandlerOutcome:
    payload = _payload(event)
    contact_id = _required_str(payload, "contactId")
    raw_stage = _required_str(payload, "stage").lower()
    try:
        stage = PipelineStage(raw_stage)
    except ValueError:
        raise MalformedPayloadError(f"Unknown pipeline stage '{raw_stage}'") from None
    reason = _optional_str(payload, "reason")

    contact = await ctx.session.get(Contact, contact_id)
    if contact is None:
        logger.warning(f"Outbox event {event.id}: contact {contact_id} not found")
        return HandlerOutcome.SKIPPED

    result = await ctx.session.execute(
        select(CrmPipeline).where(CrmPipeline.contact_id == contact_id)
    )
    pipeline = result.scalar_one_or_none()
    now = utcnow()
    if pipeline is None:
        ctx.session.add(
            CrmPipeline(contact_id=contact_id, stage=stage.value, notes=reason, created_at=now, updated_at=now)
        )
    else:
        pipeline.stage = stage.value
        pipeline.notes = reason
        pipeline.updated_at = now
    await ctx.session.flush()
    logger.info(f"Pipeline stage for contact {contact_id} set to {stage.value}")
    return HandlerOutcome.PROCESSED


HANDLERS: Dict[OutboxEventType, Handler] = {
    OutboxEventType.ESTIMATE_REQUESTED: handle_estimate_requested,
    OutboxEventType.ESTIMATE_RESCHEDULED: handle_estimate_rescheduled,
    OutboxEventType.ESTIMATE_STATUS_CHANGED: handle_lead_confirmation,
    OutboxEventType.LEAD_CREATED: handle_lead_confirmation,
    OutboxEventType.QUOTE_SENT: handle_quote_sent,
    OutboxEventType.QUOTE_DECISION: handle_quote_decision,
    OutboxEventType.PAYMENT_RECORDED: handle_payment_recorded,
    OutboxEventType.PIPELINE_STAGE_REQUEST: handle_pipeline_stage_request,
}

_unrouted = set(OutboxEventType) - set(HANDLERS)
if _unrouted:
    raise RuntimeError(f"Outbox event types without a handler: {sorted(t.value for t in _unrouted)}")


def resolve_handler(event_type: str) -> Optional[Handler]:
    """Look up the handler for a stored type tag; None for unknown tags."""
    member = OutboxEventType.parse(event_type)
    if member is None:
        return None
    return HANDLERS[member]
