"""Shared test fixtures and configuration."""

import os
import uuid
import pytest
from datetime import datetime
from typing import Any, Dict, List, Optional
from unittest.mock import patch

# Set up test environment variables before importing modules
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from ops_integration.calendar import AppointmentCalendarPayload, CalendarClientBase
from ops_integration.config import Settings
from ops_integration.database import (
    Appointment,
    Contact,
    Lead,
    Property,
    Quote,
    create_async_engine,
    get_async_session_factory,
    run_migrations,
    session_scope,
)
from ops_integration.notifications import EstimateNotification, NotifierBase, QuoteNotification
from ops_integration.reconciliation import ChargeFetcherBase, ProviderCharge


class FakeCalendarClient(CalendarClientBase):
    """Calendar client that replays scripted results and records calls."""

    def __init__(self, create_results: Optional[List[Any]] = None, update_results: Optional[List[Any]] = None):
        self.create_results = list(create_results or [])
        self.update_results = list(update_results or [])
        self.created: List[AppointmentCalendarPayload] = []
        self.updated: List[str] = []

    async def create_event(self, payload: AppointmentCalendarPayload) -> Optional[str]:
        self.created.append(payload)
        result = self.create_results.pop(0) if self.create_results else f"evt_{len(self.created)}"
        if isinstance(result, Exception):
            raise result
        return result

    async def update_event(self, event_id: str, payload: AppointmentCalendarPayload) -> bool:
        self.updated.append(event_id)
        result = self.update_results.pop(0) if self.update_results else True
        if isinstance(result, Exception):
            raise result
        return result


class RecordingNotifier(NotifierBase):
    """Notifier that keeps every message it was asked to send."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.fail_with = fail_with
        self.estimates: List[tuple] = []
        self.quotes_sent: List[QuoteNotification] = []
        self.decisions: List[QuoteNotification] = []

    async def send_estimate_confirmation(self, notification: EstimateNotification, reason: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.estimates.append((notification, reason))

    async def send_quote_sent(self, notification: QuoteNotification) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.quotes_sent.append(notification)

    async def send_quote_decision(self, notification: QuoteNotification) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.decisions.append(notification)


class FakeChargeFetcher(ChargeFetcherBase):
    """Charge fetcher serving a fixed list of raw charge documents."""

    def __init__(self, charges: Optional[List[Dict[str, Any]]] = None):
        self.charges = [ProviderCharge.model_validate(c) for c in (charges or [])]
        self.calls: List[datetime] = []

    def list_charges_since(self, start: datetime) -> List[ProviderCharge]:
        self.calls.append(start)
        return [c for c in self.charges if c.is_settled]


def make_charge(charge_id: str = "ch_1", **overrides) -> Dict[str, Any]:
    """Raw Stripe-shaped charge document."""
    charge = {
        "id": charge_id,
        "amount": 12500,
        "currency": "usd",
        "status": "succeeded",
        "created": 1767268800,  # 2026-01-01T12:00:00Z
        "captured": True,
        "paid": True,
        "refunded": False,
        "receipt_url": f"https://pay.stripe.com/receipts/{charge_id}",
        "metadata": {},
        "payment_method_details": {"type": "card", "card": {"brand": "visa", "last4": "4242"}},
    }
    charge.update(overrides)
    return charge


@pytest.fixture
def settings() -> Settings:
    """Settings with no retry delay so soft-failure paths run instantly."""
    return Settings(calendar_retry_delay_ms=0, site_url="https://example.test")


@pytest.fixture
def calendar_client() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def mock_api_key():
    """Set up mock API key for authentication."""
    with patch.dict(os.environ, {"API_KEY": "test_api_key_12345"}):
        yield "test_api_key_12345"


@pytest.fixture
def auth_headers(mock_api_key):
    """Return headers with authentication."""
    return {"Authorization": f"Bearer {mock_api_key}"}


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database with the full schema."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    await run_migrations(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_async_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_appointment(session_factory):
    """Factory committing a contact, property and appointment; returns the appointment."""

    async def _make(
        email: Optional[str] = "pat@example.com",
        phone_e164: Optional[str] = None,
        start_at: Optional[datetime] = datetime(2026, 1, 2, 15, 0),
        status: str = "confirmed",
        contact_id: Optional[str] = None,
        lead_services: Optional[List[str]] = None,
        appointment_id: Optional[str] = None,
        calendar_event_id: Optional[str] = None,
    ) -> Appointment:
        async with session_scope(session_factory) as session:
            if contact_id is None:
                contact = Contact(first_name="Pat", last_name="Lee", email=email, phone_e164=phone_e164)
                session.add(contact)
                await session.flush()
                contact_id = contact.id
            prop = Property(contact_id=contact_id, address_line1="1 Main St", city="Denver", state="CO", postal_code="80202")
            session.add(prop)
            await session.flush()
            lead = None
            if lead_services is not None:
                lead = Lead(contact_id=contact_id, property_id=prop.id)
                lead.services = lead_services
                session.add(lead)
                await session.flush()
            appointment = Appointment(
                contact_id=contact_id,
                property_id=prop.id,
                lead_id=lead.id if lead is not None else None,
                start_at=start_at,
                status=status,
                calendar_event_id=calendar_event_id,
            )
            if appointment_id is not None:
                appointment.id = appointment_id
            session.add(appointment)
        return appointment

    return _make


@pytest.fixture
def make_quote(session_factory):
    """Factory committing a quote for an existing contact."""

    async def _make(
        contact_id: str,
        quote_id: Optional[str] = None,
        status: str = "sent",
        total: int = 50000,
        deposit_due: int = 12500,
        balance_due: int = 37500,
        job_appointment_id: Optional[str] = None,
        share_token: Optional[str] = None,
        with_share_token: bool = True,
    ) -> Quote:
        async with session_scope(session_factory) as session:
            quote = Quote(
                contact_id=contact_id,
                status=status,
                total=total,
                deposit_due=deposit_due,
                balance_due=balance_due,
                job_appointment_id=job_appointment_id,
                share_token=share_token or (uuid.uuid4().hex if with_share_token else None),
            )
            quote.services = ["gutter cleaning"]
            if quote_id is not None:
                quote.id = quote_id
            session.add(quote)
        return quote

    return _make


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Start every test with empty rate limit counters."""
    from ops_integration.auth import limiter
    limiter.reset()
    yield
