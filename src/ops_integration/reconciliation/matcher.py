"""Resolve which local appointment a provider charge pays for."""

import re
import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import Appointment, Quote
from ..database.repository import AppointmentRepository
from .mapper import APPOINTMENT_ID_KEYS, metadata_value
from .models import ProviderCharge

logger = logging.getLogger(__name__)

QUOTE_ID_KEYS = ("quote_id", "quoteId")
EMAIL_KEYS = ("contact_email", "email", "customer_email")
PHONE_KEYS = ("contact_phone", "phone", "phone_e164")

_PHONE_STRIP = re.compile(r"[^+0-9]")


def normalize_phone(raw: str) -> Optional[str]:
    """Best-effort E.164 form of a phone string, or None if no digits remain."""
    digits = _PHONE_STRIP.sub("", raw)
    if not digits.strip("+"):
        return None
    return digits if digits.startswith("+") else f"+{digits}"


class AppointmentMatcher:
    """
    Heuristic chain from a charge to an appointment id.

    Order: embedded appointment id, embedded quote id, then the customer's
    open appointments narrowed by date and amount. Anything short of a
    single candidate resolves to None; a missed match is safe, a wrong one
    is not.
    """

    def __init__(self, session: AsyncSession, match_window_days: int = 3):
        self.session = session
        self.appointments = AppointmentRepository(session)
        self.match_window = timedelta(days=match_window_days)

    async def resolve_appointment_id(self, charge: ProviderCharge) -> Optional[str]:
        metadata = charge.metadata or {}

        direct_id = metadata_value(metadata, APPOINTMENT_ID_KEYS)
        if direct_id and await self.appointments.exists(direct_id):
            return direct_id

        quote_id = metadata_value(metadata, QUOTE_ID_KEYS)
        if quote_id:
            appointment_id = await self._from_quote(quote_id)
            if appointment_id:
                return appointment_id

        candidates = await self._candidates_for_customer(charge)
        return self._pick(charge, candidates, await self._quotes_for(candidates))

    async def _from_quote(self, quote_id: str) -> Optional[str]:
        quote = await self.session.get(Quote, quote_id)
        if quote is None or not quote.job_appointment_id:
            return None
        if not await self.appointments.exists(quote.job_appointment_id):
            return None
        return quote.job_appointment_id

    async def _candidates_for_customer(self, charge: ProviderCharge) -> List[Appointment]:
        metadata = charge.metadata or {}
        billing = charge.billing_details

        email = metadata_value(metadata, EMAIL_KEYS)
        if not email and billing is not None and billing.email:
            email = billing.email.strip()
        if not email and charge.receipt_email:
            email = charge.receipt_email.strip()
        if email:
            found = await self.appointments.active_for_contact(email=email)
            if found:
                return found

        phone = metadata_value(metadata, PHONE_KEYS)
        if not phone and billing is not None and billing.phone:
            phone = billing.phone
        phone_e164 = normalize_phone(phone) if phone else None
        if phone_e164:
            return await self.appointments.active_for_contact(phone_e164=phone_e164)
        return []

    async def _quotes_for(self, candidates: List[Appointment]) -> List[Quote]:
        if len(candidates) < 2:
            return []
        return await self.appointments.quotes_for_appointments([a.id for a in candidates])

    def _pick(
        self,
        charge: ProviderCharge,
        candidates: List[Appointment],
        quotes: List[Quote],
    ) -> Optional[str]:
        if not candidates:
            return None
        if len(candidates) == 1:
            return candidates[0].id

        charged_at = charge.created_at
        nearby = [
            a for a in candidates
            if a.start_at is not None and abs(a.start_at - charged_at) <= self.match_window
        ]
        if len(nearby) == 1:
            return nearby[0].id

        pool = nearby or candidates
        amount_ids = {
            q.job_appointment_id
            for q in quotes
            if charge.amount in (q.total, q.deposit_due, q.balance_due)
        }
        by_amount = [a for a in pool if a.id in amount_ids]
        if len(by_amount) == 1:
            return by_amount[0].id

        logger.info(
            f"Charge {charge.id}: {len(candidates)} candidate appointments, no unique match"
        )
        return None
