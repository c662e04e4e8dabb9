"""SQLAlchemy models for the outbox, payment records and the scheduling data they touch."""

import uuid
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    DateTime,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import enum


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every column in this schema."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


def _load_json(raw: Optional[str]) -> Any:
    if raw:
        return json.loads(raw)
    return None


def _dump_json(value: Any) -> Optional[str]:
    if value is not None:
        return json.dumps(value, default=str)
    return None


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class OutboxStatus(str, enum.Enum):
    """Lifecycle of an outbox row."""
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class AppointmentStatus(str, enum.Enum):
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELED = "canceled"


class QuoteStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class PipelineStage(str, enum.Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    QUOTED = "quoted"
    WON = "won"
    LOST = "lost"


class OutboxEvent(Base):
    """Durable intent-to-act, consumed by the outbox dispatcher."""
    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OutboxStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_outbox_events_status_created_at", "status", "created_at"),
    )

    @property
    def payload(self) -> Any:
        """Get payload as a structured document."""
        return _load_json(self.payload_json)

    @payload.setter
    def payload(self, value: Any) -> None:
        self.payload_json = _dump_json(value if value is not None else {})

    def to_dict(self) -> Dict[str, Any]:
        # Unparseable rows are still listed; the stored text is passed through as-is
        try:
            payload, payload_raw = self.payload, None
        except ValueError:
            payload, payload_raw = None, self.payload_json
        return {
            "id": self.id,
            "type": self.type,
            "payload": payload,
            "payload_raw": payload_raw,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


class SideEffectReceipt(Base):
    """Marks a non-idempotent side effect (e.g. a notification) as done for an event."""
    __tablename__ = "side_effect_receipts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    event_id: Mapped[str] = mapped_column(String(36), nullable=False)
    effect: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("event_id", "effect", name="uq_side_effect_receipts_event_effect"),
    )


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    phone_e164: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def display_name(self) -> str:
        parts = [p.strip() for p in (self.first_name, self.last_name) if p and p.strip()]
        return " ".join(parts) or "Customer"


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    contact_id: Mapped[str] = mapped_column(String(36), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    address_line1: Mapped[str] = mapped_column(String(255), nullable=False)
    city: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    state: Mapped[str] = mapped_column(String(60), nullable=False, default="")
    postal_code: Mapped[str] = mapped_column(String(20), nullable=False, default="")


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    contact_id: Mapped[str] = mapped_column(String(36), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    property_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("properties.id"), nullable=True)
    services_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    form_payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    @property
    def services(self) -> List[str]:
        value = _load_json(self.services_json)
        if not isinstance(value, list):
            return []
        return [s for s in value if isinstance(s, str) and s.strip()]

    @services.setter
    def services(self, value: Optional[List[str]]) -> None:
        self.services_json = _dump_json(value)

    @property
    def form_payload(self) -> Optional[Dict[str, Any]]:
        value = _load_json(self.form_payload_json)
        return value if isinstance(value, dict) else None

    @form_payload.setter
    def form_payload(self, value: Optional[Dict[str, Any]]) -> None:
        self.form_payload_json = _dump_json(value)


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    contact_id: Mapped[str] = mapped_column(String(36), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    property_id: Mapped[str] = mapped_column(String(36), ForeignKey("properties.id", ondelete="CASCADE"), nullable=False)
    lead_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)
    start_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    travel_buffer_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AppointmentStatus.REQUESTED.value)
    calendar_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reschedule_token: Mapped[str] = mapped_column(String(64), nullable=False, default=lambda: uuid.uuid4().hex)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_appointments_start_at", "start_at"),
        Index("ix_appointments_status", "status"),
        Index("ix_appointments_contact_id", "contact_id"),
    )


class AppointmentNote(Base):
    __tablename__ = "appointment_notes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    appointment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class Quote(Base):
    __tablename__ = "quotes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    contact_id: Mapped[str] = mapped_column(String(36), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    property_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("properties.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=QuoteStatus.PENDING.value)
    services_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Amounts in minor units
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deposit_due: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    balance_due: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    share_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    decision_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    decision_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    job_appointment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def services(self) -> List[str]:
        value = _load_json(self.services_json)
        if not isinstance(value, list):
            return []
        return [s for s in value if isinstance(s, str) and s.strip()]

    @services.setter
    def services(self, value: Optional[List[str]]) -> None:
        self.services_json = _dump_json(value)


class CrmPipeline(Base):
    __tablename__ = "crm_pipeline"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    contact_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    stage: Mapped[str] = mapped_column(String(20), nullable=False, default=PipelineStage.NEW.value)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PaymentRecord(Base):
    """Local mirror of a provider charge, keyed by the provider's charge id."""
    __tablename__ = "payment_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    external_charge_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="stripe")
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    card_brand: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    receipt_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    appointment_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True
    )
    # Set by manual attach/detach; reconciliation never touches appointment_id afterwards
    appointment_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("external_charge_id", name="uq_payment_records_external_charge_id"),
        Index("ix_payment_records_appointment_id", "appointment_id"),
        Index("ix_payment_records_created_at", "created_at"),
    )

    @property
    def provider_metadata(self) -> Optional[Dict[str, Any]]:
        """Get provider metadata as dictionary."""
        return _load_json(self.metadata_json)

    @provider_metadata.setter
    def provider_metadata(self, value: Optional[Dict[str, Any]]) -> None:
        self.metadata_json = _dump_json(value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert payment record to dictionary representation."""
        return {
            "id": self.id,
            "external_charge_id": self.external_charge_id,
            "provider": self.provider,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "method": self.method,
            "card_brand": self.card_brand,
            "last4": self.last4,
            "receipt_url": self.receipt_url,
            "metadata": self.provider_metadata,
            "appointment_id": self.appointment_id,
            "appointment_locked": self.appointment_locked,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
