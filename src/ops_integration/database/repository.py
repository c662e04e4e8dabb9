"""Repository layer for outbox, payment record and scheduling lookups."""

import enum
import uuid
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Sequence, Tuple

from sqlalchemy import select, update, and_, or_, func, case
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.dialects import postgresql, sqlite

from .models import (
    OutboxEvent,
    OutboxStatus,
    SideEffectReceipt,
    PaymentRecord,
    Appointment,
    AppointmentStatus,
    Contact,
    Quote,
    utcnow,
)

logger = logging.getLogger(__name__)

# Longest error summary kept on an outbox row
MAX_ERROR_LENGTH = 500


class ReleaseResult(str, enum.Enum):
    """Where a failed row ended up after release_for_retry."""
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    # Another dispatcher reclaimed the row; nothing was written
    LOST = "lost"


class OutboxRepository:
    """Store accessor for outbox rows: insert on produce, select/claim/mark on consume."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def insert(
        self,
        event_type: str,
        payload: Dict[str, Any],
        created_at: Optional[datetime] = None,
    ) -> OutboxEvent:
        """Append a pending event.

        Args:
            event_type: Event type tag, e.g. ``quote.decision``.
            payload: Handler-specific document.
            created_at: Optional explicit insertion time.

        Returns:
            Created OutboxEvent instance.
        """
        event = OutboxEvent(type=event_type, status=OutboxStatus.PENDING.value, attempts=0)
        event.payload = payload
        if created_at is not None:
            event.created_at = created_at

        self.session.add(event)
        await self.session.flush()

        logger.info(f"Enqueued outbox event {event.id} ({event_type})")
        return event

    async def get_by_id(self, event_id: str) -> Optional[OutboxEvent]:
        result = await self.session.execute(
            select(OutboxEvent).where(OutboxEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _eligible(self, stale_before: Optional[datetime]):
        pending = OutboxEvent.status == OutboxStatus.PENDING.value
        if stale_before is None:
            return pending
        stale_claim = and_(
            OutboxEvent.status == OutboxStatus.PROCESSING.value,
            OutboxEvent.claimed_at < stale_before,
        )
        return or_(pending, stale_claim)

    async def select_pending(
        self,
        limit: int,
        claim_timeout_seconds: Optional[int] = None,
    ) -> List[OutboxEvent]:
        """Select up to ``limit`` eligible events, oldest first.

        Args:
            limit: Maximum number of rows.
            claim_timeout_seconds: When set, rows claimed longer ago than this
                (a dispatcher that died mid-row) are eligible again.

        Returns:
            List of OutboxEvent instances ordered by created_at, then id.
        """
        stale_before = None
        if claim_timeout_seconds is not None:
            stale_before = utcnow() - timedelta(seconds=claim_timeout_seconds)

        result = await self.session.execute(
            select(OutboxEvent)
            .where(self._eligible(stale_before))
            .order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def claim(
        self,
        event_id: str,
        claim_timeout_seconds: Optional[int] = None,
        claimed_at: Optional[datetime] = None,
    ) -> bool:
        """Atomically flip an eligible row to processing.

        Args:
            event_id: Event id.
            claim_timeout_seconds: Age after which a processing claim is stale.
            claimed_at: Claim timestamp to write; later marks pass it back to
                prove they still own the row. Defaults to now.

        Returns:
            True if this caller now owns the row, False if another dispatcher
            claimed or finished it first.
        """
        now = claimed_at or utcnow()
        stale_before = None
        if claim_timeout_seconds is not None:
            stale_before = now - timedelta(seconds=claim_timeout_seconds)

        result = await self.session.execute(
            update(OutboxEvent)
            .where(and_(OutboxEvent.id == event_id, self._eligible(stale_before)))
            .values(status=OutboxStatus.PROCESSING.value, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _owned(event_id: str, claimed_at: Optional[datetime]):
        """Row filter for a terminal write; with a claim token, only the claim holder matches."""
        if claimed_at is None:
            return OutboxEvent.id == event_id
        return and_(
            OutboxEvent.id == event_id,
            OutboxEvent.status == OutboxStatus.PROCESSING.value,
            OutboxEvent.claimed_at == claimed_at,
        )

    async def mark_processed(self, event_id: str, claimed_at: Optional[datetime] = None) -> bool:
        """Mark a claimed row as successfully dispatched.

        Returns:
            False if ``claimed_at`` is given and the claim was lost (the row
            was reclaimed after going stale); the row is left untouched.
        """
        result = await self.session.execute(
            update(OutboxEvent)
            .where(self._owned(event_id, claimed_at))
            .values(
                status=OutboxStatus.PROCESSED.value,
                processed_at=utcnow(),
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_failed(
        self,
        event_id: str,
        reason: str,
        count_attempt: bool = True,
        claimed_at: Optional[datetime] = None,
    ) -> bool:
        """Dead-letter a row; it is not selected again until an operator resets it.

        Returns:
            False if the row is missing or, with ``claimed_at``, no longer ours.
        """
        values: Dict[str, Any] = {
            "status": OutboxStatus.FAILED.value,
            "processed_at": utcnow(),
            "last_error": reason[:MAX_ERROR_LENGTH],
        }
        if count_attempt:
            values["attempts"] = OutboxEvent.attempts + 1
        result = await self.session.execute(
            update(OutboxEvent)
            .where(self._owned(event_id, claimed_at))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        logger.warning(f"Outbox event {event_id} dead-lettered: {reason[:MAX_ERROR_LENGTH]}")
        return True

    async def release_for_retry(
        self,
        event_id: str,
        reason: str,
        max_attempts: int,
        claimed_at: Optional[datetime] = None,
    ) -> ReleaseResult:
        """Record a failed attempt and return the row to pending, or dead-letter it.

        Args:
            event_id: Claimed event id.
            reason: Failure summary.
            max_attempts: Attempts allowed before the row is dead-lettered.
            claimed_at: Claim token from ``claim``; when given, the write only
                applies while this caller still holds the claim.

        Returns:
            REQUEUED, DEAD_LETTERED, or LOST when the row is gone or was
            reclaimed by another dispatcher.
        """
        event = await self.get_by_id(event_id)
        if event is None:
            return ReleaseResult.LOST

        attempts = (event.attempts or 0) + 1
        if attempts >= max_attempts:
            if await self.mark_failed(event_id, reason, claimed_at=claimed_at):
                return ReleaseResult.DEAD_LETTERED
            return ReleaseResult.LOST

        result = await self.session.execute(
            update(OutboxEvent)
            .where(self._owned(event_id, claimed_at))
            .values(
                status=OutboxStatus.PENDING.value,
                attempts=OutboxEvent.attempts + 1,
                claimed_at=None,
                last_error=reason[:MAX_ERROR_LENGTH],
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return ReleaseResult.LOST
        return ReleaseResult.REQUEUED

    async def reset(self, event_id: str) -> bool:
        """Operator reset: make a pending, processed or failed row pending again.

        A row in ``processing`` is owned by a running dispatcher and is left
        alone; False is returned for it as for a missing id.
        """
        result = await self.session.execute(
            update(OutboxEvent)
            .where(
                and_(
                    OutboxEvent.id == event_id,
                    OutboxEvent.status != OutboxStatus.PROCESSING.value,
                )
            )
            .values(
                status=OutboxStatus.PENDING.value,
                attempts=0,
                claimed_at=None,
                processed_at=None,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Outbox event {event_id} reset to pending")
        return result.rowcount == 1

    async def list_failed(self, limit: int = 100) -> List[OutboxEvent]:
        """List dead-lettered events, newest first."""
        result = await self.session.execute(
            select(OutboxEvent)
            .where(OutboxEvent.status == OutboxStatus.FAILED.value)
            .order_by(OutboxEvent.processed_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        result = await self.session.execute(
            select(OutboxEvent.status, func.count()).group_by(OutboxEvent.status)
        )
        return {status: count for status, count in result.all()}


class SideEffectReceiptRepository:
    """Consumer-side idempotency for side effects that cannot be repeated safely."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, event_id: str, effect: str) -> bool:
        result = await self.session.execute(
            select(SideEffectReceipt.id).where(
                and_(
                    SideEffectReceipt.event_id == event_id,
                    SideEffectReceipt.effect == effect,
                )
            )
        )
        return result.first() is not None

    async def record(self, event_id: str, effect: str) -> None:
        self.session.add(SideEffectReceipt(event_id=event_id, effect=effect))
        await self.session.flush()


class PaymentRecordRepository:
    """Repository for PaymentRecord upserts and manual appointment links."""

    # Columns overwritten when an existing charge is re-imported
    MUTABLE_FIELDS = (
        "amount",
        "currency",
        "status",
        "method",
        "card_brand",
        "last4",
        "receipt_url",
        "metadata_json",
        "captured_at",
    )

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get_by_id(self, payment_id: str) -> Optional[PaymentRecord]:
        result = await self.session.execute(
            select(PaymentRecord).where(PaymentRecord.id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_external_charge_id(self, external_charge_id: str) -> Optional[PaymentRecord]:
        result = await self.session.execute(
            select(PaymentRecord).where(PaymentRecord.external_charge_id == external_charge_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _insert_for_dialect(self):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        return None

    async def upsert(self, values: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        """Insert or update a payment record keyed by external_charge_id.

        The write is a single INSERT ... ON CONFLICT DO UPDATE statement.
        On conflict every mutable field and updated_at are overwritten,
        created_at is left alone, and appointment_id is only filled when the
        stored value is null and not locked by an operator.

        Args:
            values: Column values; must include external_charge_id.
            now: Timestamp for updated_at.

        Returns:
            True if a new row was inserted, False if an existing row was updated.
        """
        now = now or utcnow()
        charge_id = values["external_charge_id"]

        existing = await self.session.execute(
            select(PaymentRecord.id).where(PaymentRecord.external_charge_id == charge_id)
        )
        inserted = existing.first() is None

        insert = self._insert_for_dialect()
        if insert is None:
            await self._upsert_generic(values, now)
            return inserted

        row = dict(values)
        row.setdefault("id", str(uuid.uuid4()))
        row["updated_at"] = now
        stmt = insert(PaymentRecord).values(**row)

        update_set: Dict[str, Any] = {
            field: stmt.excluded[field] for field in self.MUTABLE_FIELDS if field in values
        }
        update_set["updated_at"] = now
        update_set["appointment_id"] = func.coalesce(
            PaymentRecord.appointment_id,
            # locked rows keep whatever the operator left, including null
            _unless_locked(stmt.excluded.appointment_id),
        )

        await self.session.execute(
            stmt.on_conflict_do_update(
                index_elements=[PaymentRecord.external_charge_id],
                set_=update_set,
            )
        )
        await self.session.flush()
        logger.debug(f"Upserted payment record for charge {charge_id} (inserted={inserted})")
        return inserted

    async def _upsert_generic(self, values: Dict[str, Any], now: datetime) -> None:
        record = await self.get_by_external_charge_id(values["external_charge_id"])
        if record is None:
            record = PaymentRecord(**values)
            record.updated_at = now
            self.session.add(record)
        else:
            for field in self.MUTABLE_FIELDS:
                if field in values:
                    setattr(record, field, values[field])
            if record.appointment_id is None and not record.appointment_locked:
                record.appointment_id = values.get("appointment_id")
            record.updated_at = now
        await self.session.flush()

    async def set_appointment(
        self,
        payment: PaymentRecord,
        appointment_id: Optional[str],
    ) -> PaymentRecord:
        """Operator attach (id) or detach (None); locks the link against reconciliation."""
        payment.appointment_id = appointment_id
        payment.appointment_locked = True
        payment.updated_at = utcnow()
        await self.session.flush()
        logger.info(f"Payment {payment.id} appointment set to {appointment_id} by operator")
        return payment

    async def link_state(self, external_charge_id: str) -> Optional[Tuple[Optional[str], bool]]:
        """(appointment_id, appointment_locked) of a stored charge, or None if not stored."""
        result = await self.session.execute(
            select(PaymentRecord.appointment_id, PaymentRecord.appointment_locked)
            .where(PaymentRecord.external_charge_id == external_charge_id)
        )
        row = result.first()
        if row is None:
            return None
        return row[0], bool(row[1])

    async def list_recent(self, limit: int = 100) -> List[PaymentRecord]:
        result = await self.session.execute(
            select(PaymentRecord).order_by(PaymentRecord.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())


def _unless_locked(candidate):
    return case((PaymentRecord.appointment_locked.is_(True), None), else_=candidate)


class AppointmentRepository:
    """Read-side lookups used by outbox handlers and the appointment matcher."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, appointment_id: str) -> Optional[Appointment]:
        result = await self.session.execute(
            select(Appointment).where(Appointment.id == appointment_id)
        )
        return result.scalar_one_or_none()

    async def exists(self, appointment_id: str) -> bool:
        result = await self.session.execute(
            select(Appointment.id).where(Appointment.id == appointment_id)
        )
        return result.first() is not None

    async def first_for_lead(self, lead_id: str) -> Optional[Appointment]:
        result = await self.session.execute(
            select(Appointment)
            .where(Appointment.lead_id == lead_id)
            .order_by(Appointment.created_at.asc(), Appointment.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def active_for_contact(
        self,
        email: Optional[str] = None,
        phone_e164: Optional[str] = None,
    ) -> List[Appointment]:
        """Non-canceled appointments of the contact with this email or phone.

        Ordered by id so that callers see a stable candidate list.
        """
        if email:
            identity = func.lower(Contact.email) == email.lower()
        elif phone_e164:
            identity = Contact.phone_e164 == phone_e164
        else:
            return []

        result = await self.session.execute(
            select(Appointment)
            .join(Contact, Appointment.contact_id == Contact.id)
            .where(
                and_(
                    identity,
                    Appointment.status != AppointmentStatus.CANCELED.value,
                )
            )
            .order_by(Appointment.id.asc())
        )
        return list(result.scalars().all())

    async def quotes_for_appointments(self, appointment_ids: Sequence[str]) -> List[Quote]:
        if not appointment_ids:
            return []
        result = await self.session.execute(
            select(Quote).where(Quote.job_appointment_id.in_(list(appointment_ids)))
        )
        return list(result.scalars().all())

    async def touch(self, appointment: Appointment) -> None:
        appointment.updated_at = utcnow()
        await self.session.flush()
