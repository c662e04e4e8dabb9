"""Outbound customer/team notifications (messaging provider boundary)."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .calendar import CalendarAddress, CalendarContact

logger = logging.getLogger(__name__)


class SchedulingPreferences(BaseModel):
    preferred_date: Optional[str] = None
    alternate_date: Optional[str] = None
    time_window: Optional[str] = None


class AppointmentSummary(BaseModel):
    id: str
    start_at: Optional[datetime] = None
    duration_minutes: int = 60
    travel_buffer_minutes: int = 30
    status: str = "requested"
    reschedule_url: str
    calendar_event_id: Optional[str] = None


class EstimateNotification(BaseModel):
    """Payload for estimate confirmation messages."""
    lead_id: Optional[str] = None
    services: List[str] = Field(default_factory=list)
    contact: CalendarContact
    location: CalendarAddress
    scheduling: SchedulingPreferences = Field(default_factory=SchedulingPreferences)
    appointment: AppointmentSummary
    notes: Optional[str] = None


class QuoteNotification(BaseModel):
    """Payload for quote link / decision messages. Amounts in minor units."""
    quote_id: str
    services: List[str] = Field(default_factory=list)
    contact: CalendarContact
    total: int = 0
    deposit_due: int = 0
    balance_due: int = 0
    share_url: str
    expires_at: Optional[datetime] = None
    notes: Optional[str] = None
    decision: Optional[str] = None
    source: Optional[str] = None


class NotifierBase(ABC):
    """Messaging provider interface used by outbox handlers."""

    @abstractmethod
    async def send_estimate_confirmation(self, notification: EstimateNotification, reason: str) -> None:
        """Send a confirmation; ``reason`` is ``requested`` or ``rescheduled``."""
        raise NotImplementedError

    @abstractmethod
    async def send_quote_sent(self, notification: QuoteNotification) -> None:
        raise NotImplementedError

    @abstractmethod
    async def send_quote_decision(self, notification: QuoteNotification) -> None:
        raise NotImplementedError


class LoggingNotifier(NotifierBase):
    """Default notifier: records what would be sent."""

    async def send_estimate_confirmation(self, notification: EstimateNotification, reason: str) -> None:
        logger.info(
            f"Estimate confirmation ({reason}) for appointment {notification.appointment.id} "
            f"to {notification.contact.name}"
        )

    async def send_quote_sent(self, notification: QuoteNotification) -> None:
        logger.info(f"Quote {notification.quote_id} link sent to {notification.contact.name}")

    async def send_quote_decision(self, notification: QuoteNotification) -> None:
        logger.info(
            f"Quote {notification.quote_id} {notification.decision} "
            f"(source: {notification.source})"
        )


def format_minor_units(amount: Optional[int], currency: Optional[str]) -> str:
    """Render minor units for humans, e.g. ``USD 12.50``."""
    cents = amount if isinstance(amount, int) else 0
    curr = currency.strip().upper() if currency and currency.strip() else "USD"
    return f"{curr} {cents / 100:.2f}"


def get_notifier() -> NotifierBase:
    """Dependency returning the configured notifier."""
    return LoggingNotifier()
