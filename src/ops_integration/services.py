"""Operator-facing payment record operations."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from .database import (
    PaymentRecord,
    PaymentRecordRepository,
    AppointmentRepository,
)

logger = logging.getLogger(__name__)


class PaymentRecordService:
    """Manual appointment links for imported payment records."""

    def __init__(self, session: AsyncSession):
        """Initialize the service with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session
        self.payment_repo = PaymentRecordRepository(session)
        self.appointment_repo = AppointmentRepository(session)

    async def _get_payment(self, payment_id: str) -> PaymentRecord:
        payment = await self.payment_repo.get_by_id(payment_id)
        if payment is None:
            raise LookupError(f"Payment record {payment_id} not found")
        return payment

    async def attach_appointment(self, payment_id: str, appointment_id: str) -> PaymentRecord:
        """Link a payment to an appointment and lock the link against reconciliation.

        Raises:
            LookupError: The payment or the appointment does not exist.
        """
        payment = await self._get_payment(payment_id)
        if not await self.appointment_repo.exists(appointment_id):
            raise LookupError(f"Appointment {appointment_id} not found")
        return await self.payment_repo.set_appointment(payment, appointment_id)

    async def detach_appointment(self, payment_id: str) -> PaymentRecord:
        """Clear a payment's appointment; reconciliation will not re-link it.

        Raises:
            LookupError: The payment does not exist.
        """
        payment = await self._get_payment(payment_id)
        return await self.payment_repo.set_appointment(payment, None)
