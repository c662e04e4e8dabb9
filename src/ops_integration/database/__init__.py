"""Database module for the integration core's persistence."""

from .models import (
    Base,
    OutboxEvent,
    OutboxStatus,
    SideEffectReceipt,
    Contact,
    Property,
    Lead,
    Appointment,
    AppointmentStatus,
    AppointmentNote,
    Quote,
    QuoteStatus,
    CrmPipeline,
    PipelineStage,
    PaymentRecord,
    utcnow,
)
from .migrations import run_migrations, apply_schema_patches
from .session import (
    get_db,
    get_database_url,
    get_session_factory,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
    session_scope,
)
from .repository import (
    OutboxRepository,
    ReleaseResult,
    SideEffectReceiptRepository,
    PaymentRecordRepository,
    AppointmentRepository,
)

__all__ = [
    # Models
    "Base",
    "OutboxEvent",
    "OutboxStatus",
    "SideEffectReceipt",
    "Contact",
    "Property",
    "Lead",
    "Appointment",
    "AppointmentStatus",
    "AppointmentNote",
    "Quote",
    "QuoteStatus",
    "CrmPipeline",
    "PipelineStage",
    "PaymentRecord",
    "utcnow",
    # Schema
    "run_migrations",
    "apply_schema_patches",
    # Session management
    "get_db",
    "get_database_url",
    "get_session_factory",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    "session_scope",
    # Repositories
    "OutboxRepository",
    "ReleaseResult",
    "SideEffectReceiptRepository",
    "PaymentRecordRepository",
    "AppointmentRepository",
]
