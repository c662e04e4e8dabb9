"""Tests for resolving charges to appointments."""

from datetime import datetime

import pytest

from ops_integration.reconciliation import AppointmentMatcher, ProviderCharge
from ops_integration.reconciliation.matcher import normalize_phone

from conftest import make_charge


def charge(**overrides) -> ProviderCharge:
    # created: 2026-01-01T12:00Z
    return ProviderCharge.model_validate(make_charge(**overrides))


class TestNormalizePhone:
    """Tests for normalize_phone."""

    @pytest.mark.parametrize("raw,expected", [
        ("+1 (303) 555-0100", "+13035550100"),
        ("13035550100", "+13035550100"),
        ("+44 20 7946 0000", "+442079460000"),
        ("n/a", None),
        ("+", None),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_phone(raw) == expected


class TestDirectMatches:
    """Tests for ids embedded in charge metadata."""

    async def test_appointment_id_in_metadata(self, db_session, make_appointment):
        appointment = await make_appointment()

        matched = await AppointmentMatcher(db_session).resolve_appointment_id(
            charge(metadata={"appointmentId": appointment.id})
        )

        assert matched == appointment.id

    async def test_unknown_appointment_id_falls_through(self, db_session, make_appointment):
        appointment = await make_appointment(email="sam@example.com")

        matched = await AppointmentMatcher(db_session).resolve_appointment_id(
            charge(metadata={"appointment_id": "gone", "email": "sam@example.com"})
        )

        assert matched == appointment.id

    async def test_quote_job_appointment(self, db_session, make_appointment, make_quote):
        appointment = await make_appointment()
        await make_quote(appointment.contact_id, quote_id="Q7", job_appointment_id=appointment.id)

        matched = await AppointmentMatcher(db_session).resolve_appointment_id(
            charge(metadata={"quote_id": "Q7"})
        )

        assert matched == appointment.id

    async def test_quote_without_job_appointment(self, db_session, make_appointment, make_quote):
        appointment = await make_appointment()
        await make_quote(appointment.contact_id, quote_id="Q7")

        matched = await AppointmentMatcher(db_session).resolve_appointment_id(
            charge(metadata={"quoteId": "Q7"})
        )

        assert matched is None


class TestCustomerMatches:
    """Tests for matching through the customer's open appointments."""

    async def test_single_appointment_by_email(self, db_session, make_appointment):
        appointment = await make_appointment(email="Pat@Example.com")

        matched = await AppointmentMatcher(db_session).resolve_appointment_id(
            charge(metadata={"contact_email": "pat@example.com"})
        )

        assert matched == appointment.id

    async def test_billing_and_receipt_email(self, db_session, make_appointment):
        appointment = await make_appointment()
        matcher = AppointmentMatcher(db_session)

        assert await matcher.resolve_appointment_id(
            charge(billing_details={"email": "pat@example.com"})
        ) == appointment.id
        assert await matcher.resolve_appointment_id(
            charge(receipt_email="pat@example.com")
        ) == appointment.id

    async def test_phone_when_email_finds_nothing(self, db_session, make_appointment):
        appointment = await make_appointment(email=None, phone_e164="+13035550100")

        matched = await AppointmentMatcher(db_session).resolve_appointment_id(
            charge(metadata={"email": "other@example.com"}, billing_details={"phone": "+1 303 555 0100"})
        )
        assert matched == appointment.id

    async def test_canceled_appointments_are_ignored(self, db_session, make_appointment):
        await make_appointment(status="canceled")

        matched = await AppointmentMatcher(db_session).resolve_appointment_id(
            charge(metadata={"email": "pat@example.com"})
        )

        assert matched is None

    async def test_no_identity(self, db_session, make_appointment):
        await make_appointment()
        assert await AppointmentMatcher(db_session).resolve_appointment_id(charge()) is None


class TestCandidateNarrowing:
    """Tests for choosing among several appointments of one customer."""

    async def test_date_window_picks_nearby(self, db_session, make_appointment):
        near = await make_appointment(start_at=datetime(2026, 1, 2, 9, 0))
        await make_appointment(contact_id=near.contact_id, start_at=datetime(2026, 2, 15, 9, 0))

        matched = await AppointmentMatcher(db_session).resolve_appointment_id(
            charge(metadata={"email": "pat@example.com"})
        )

        assert matched == near.id

    async def test_amount_breaks_date_tie(self, db_session, make_appointment, make_quote):
        first = await make_appointment(start_at=datetime(2026, 1, 1, 9, 0))
        second = await make_appointment(contact_id=first.contact_id, start_at=datetime(2026, 1, 2, 9, 0))
        await make_quote(first.contact_id, total=90000, deposit_due=30000, balance_due=60000, job_appointment_id=first.id)
        await make_quote(first.contact_id, total=50000, deposit_due=12500, balance_due=37500, job_appointment_id=second.id)

        matched = await AppointmentMatcher(db_session).resolve_appointment_id(
            charge(amount=12500, metadata={"email": "pat@example.com"})
        )

        assert matched == second.id

    async def test_amount_used_when_nothing_is_nearby(self, db_session, make_appointment, make_quote):
        first = await make_appointment(start_at=datetime(2026, 3, 1, 9, 0))
        await make_appointment(contact_id=first.contact_id, start_at=None)
        await make_quote(first.contact_id, total=30000, job_appointment_id=first.id)

        matched = await AppointmentMatcher(db_session).resolve_appointment_id(
            charge(amount=30000, metadata={"email": "pat@example.com"})
        )

        assert matched == first.id

    async def test_ambiguous_match_returns_none(self, db_session, make_appointment):
        first = await make_appointment(start_at=datetime(2026, 1, 1, 9, 0))
        await make_appointment(contact_id=first.contact_id, start_at=datetime(2026, 1, 2, 9, 0))

        matched = await AppointmentMatcher(db_session).resolve_appointment_id(
            charge(metadata={"email": "pat@example.com"})
        )

        assert matched is None

    async def test_match_window_is_configurable(self, db_session, make_appointment):
        first = await make_appointment(start_at=datetime(2026, 1, 1, 14, 0))
        await make_appointment(contact_id=first.contact_id, start_at=datetime(2026, 1, 3, 12, 0))

        matched = await AppointmentMatcher(db_session, match_window_days=1).resolve_appointment_id(
            charge(metadata={"email": "pat@example.com"})
        )

        assert matched == first.id
