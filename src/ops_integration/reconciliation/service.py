"""Reconciliation runner: import recent provider charges into payment records."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import clamp_window_days
from ..database import AppointmentRepository, PaymentRecordRepository, utcnow
from .charge_fetcher import ChargeFetcherBase, get_charge_fetcher
from .mapper import map_charge_to_payment_fields
from .matcher import AppointmentMatcher
from .models import ProviderCharge, PaymentRecordFields, ReconciliationResult

logger = logging.getLogger(__name__)


class ReconciliationRunner:
    """Pulls a window of settled charges and upserts one payment record per charge."""

    def __init__(
        self,
        session: AsyncSession,
        fetcher: Optional[ChargeFetcherBase] = None,
        matcher: Optional[AppointmentMatcher] = None,
        match_window_days: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the runner.

        Args:
            session: Async database session; the caller commits.
            fetcher: Charge fetcher. Defaults to the Stripe fetcher.
            matcher: Appointment matcher. Defaults to one bound to ``session``.
            match_window_days: Date window used by the default matcher.
            clock: Source of "now" (naive UTC).
        """
        self.session = session
        self.payments = PaymentRecordRepository(session)
        self.appointments = AppointmentRepository(session)
        self.matcher = matcher or AppointmentMatcher(session, match_window_days=match_window_days)
        self.clock = clock
        self._fetcher = fetcher

    def _get_fetcher(self) -> ChargeFetcherBase:
        if self._fetcher is None:
            self._fetcher = get_charge_fetcher("stripe")
        return self._fetcher

    async def reconcile(self, window_days: object = None) -> ReconciliationResult:
        """Import every settled charge created within the last ``window_days`` days.

        Args:
            window_days: Lookback in days; values outside (0, 90] use 14.

        Returns:
            ReconciliationResult with per-run counts.

        Raises:
            ProviderError, ConnectionError: The provider call failed.
            sqlalchemy.exc.SQLAlchemyError: The store could not be written.
        """
        days = clamp_window_days(window_days)
        window_start = self.clock() - timedelta(days=days)

        charges = self._get_fetcher().list_charges_since(window_start)
        result = ReconciliationResult(
            fetched=len(charges),
            window_days=days,
            window_start=window_start,
        )
        logger.info(f"Reconciling {len(charges)} charges since {window_start.isoformat()}")

        for charge in charges:
            fields = map_charge_to_payment_fields(charge)
            appointment_id = await self._appointment_for(charge, fields)

            inserted = await self.payments.upsert(
                fields.to_column_values(appointment_id),
                now=self.clock(),
            )
            result.upserted += 1
            if inserted:
                result.inserted += 1
            else:
                result.updated += 1
            if appointment_id:
                result.matched += 1

        logger.info(
            f"Reconciliation finished: {result.upserted} upserted "
            f"({result.inserted} new, {result.updated} updated), {result.matched} matched"
        )
        return result

    async def _appointment_for(self, charge: ProviderCharge, fields: PaymentRecordFields) -> Optional[str]:
        state = await self.payments.link_state(fields.external_charge_id)
        if state is not None:
            linked_id, locked = state
            if linked_id or locked:
                # the upsert keeps an existing or operator-locked link
                return linked_id

        if fields.appointment_id and await self.appointments.exists(fields.appointment_id):
            return fields.appointment_id
        return await self.matcher.resolve_appointment_id(charge)
