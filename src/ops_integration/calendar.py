"""Calendar provider interface and retry-wrapped event mutations."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .retry import RetryOptions, with_retry

logger = logging.getLogger(__name__)


class CalendarContact(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


class CalendarAddress(BaseModel):
    address_line1: str
    city: str = ""
    state: str = ""
    postal_code: str = ""


class AppointmentCalendarPayload(BaseModel):
    """Everything a calendar provider needs to render an appointment."""
    appointment_id: str
    start_at: datetime
    duration_minutes: int = Field(default=60)
    travel_buffer_minutes: int = Field(default=30)
    services: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    contact: CalendarContact
    location: CalendarAddress
    reschedule_url: Optional[str] = None


class CalendarClientBase(ABC):
    """
    Narrow calendar provider interface. Soft failures are reported through
    the return value (None / False); exceptions mean the call blew up.
    """

    @abstractmethod
    async def create_event(self, payload: AppointmentCalendarPayload) -> Optional[str]:
        """Create an event; return its external id, or None when not created."""
        raise NotImplementedError

    @abstractmethod
    async def update_event(self, event_id: str, payload: AppointmentCalendarPayload) -> bool:
        """Update an event; return False when the update did not take."""
        raise NotImplementedError


class NullCalendarClient(CalendarClientBase):
    """Used when no calendar provider is configured: every call soft-fails."""

    async def create_event(self, payload: AppointmentCalendarPayload) -> Optional[str]:
        logger.info(f"Calendar not configured; skipping create for appointment {payload.appointment_id}")
        return None

    async def update_event(self, event_id: str, payload: AppointmentCalendarPayload) -> bool:
        logger.info(f"Calendar not configured; skipping update of event {event_id}")
        return False


async def create_calendar_event_with_retry(
    client: CalendarClientBase,
    payload: AppointmentCalendarPayload,
    options: Optional[RetryOptions] = None,
) -> Optional[str]:
    """Create an event, retrying while the provider returns None."""
    return await with_retry(
        lambda attempt: client.create_event(payload),
        lambda result: result is None,
        options,
        fallback_message="Calendar operation failed",
    )


async def update_calendar_event_with_retry(
    client: CalendarClientBase,
    event_id: str,
    payload: AppointmentCalendarPayload,
    options: Optional[RetryOptions] = None,
) -> bool:
    """Update an event, retrying while the provider returns False."""
    return await with_retry(
        lambda attempt: client.update_event(event_id, payload),
        lambda result: result is False,
        options,
        fallback_message="Calendar operation failed",
    )


def get_calendar_client() -> CalendarClientBase:
    """Dependency returning the configured calendar client."""
    return NullCalendarClient()
