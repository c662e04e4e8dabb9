"""Tests for the outbox dispatcher."""

import pytest
from datetime import datetime, timedelta
from unittest.mock import patch

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from ops_integration.config import Settings
from ops_integration.database import (
    CrmPipeline,
    OutboxEvent,
    OutboxRepository,
    OutboxStatus,
    Quote,
    SideEffectReceipt,
    session_scope,
    utcnow,
)
from ops_integration.outbox import (
    HANDLERS,
    BatchStats,
    ClaimedEvent,
    OutboxDispatcher,
    OutboxEventType,
)

from conftest import RecordingNotifier


async def enqueue(session_factory, event_type, payload, created_at=None):
    async with session_scope(session_factory) as session:
        event = await OutboxRepository(session).insert(event_type, payload, created_at=created_at)
    return event.id


async def load_event(session_factory, event_id):
    async with session_factory() as session:
        return await OutboxRepository(session).get_by_id(event_id)


@pytest.fixture
def dispatcher(session_factory, calendar_client, notifier, settings):
    return OutboxDispatcher(session_factory, calendar=calendar_client, notifier=notifier, settings=settings)


@pytest.fixture
async def quote_q1(make_appointment, make_quote):
    appointment = await make_appointment()
    return await make_quote(appointment.contact_id, quote_id="Q1", status="sent")


class TestDispatchBatch:
    """Tests for dispatch_batch statistics and row transitions."""

    async def test_quote_decision_scenario(self, dispatcher, session_factory, notifier, quote_q1):
        event_id = await enqueue(session_factory, "quote.decision", {"quoteId": "Q1", "decision": "accepted"})

        first = await dispatcher.dispatch_batch(10)
        second = await dispatcher.dispatch_batch(10)

        assert first.as_counts() == {"total": 1, "succeeded": 1, "failed": 0}
        assert second.as_counts() == {"total": 0, "succeeded": 0, "failed": 0}
        event = await load_event(session_factory, event_id)
        assert event.status == OutboxStatus.PROCESSED.value
        assert event.processed_at is not None
        async with session_factory() as session:
            quote = await session.get(Quote, "Q1")
        assert quote.status == "accepted"
        assert quote.decision_at is not None
        assert len(notifier.decisions) == 1
        assert notifier.decisions[0].decision == "accepted"

    async def test_empty_outbox(self, dispatcher):
        stats = await dispatcher.dispatch_batch()
        assert stats.as_counts() == {"total": 0, "succeeded": 0, "failed": 0}

    async def test_missing_entity_counts_as_skipped_success(self, dispatcher, session_factory):
        event_id = await enqueue(session_factory, "lead.created", {"leadId": "no-such-lead"})

        stats = await dispatcher.dispatch_batch(10)

        assert stats.succeeded == 1
        assert stats.skipped == 1
        assert stats.failed == 0
        assert (await load_event(session_factory, event_id)).status == OutboxStatus.PROCESSED.value

    async def test_fifo_order_within_batch(self, dispatcher, session_factory, make_appointment):
        appointment = await make_appointment()
        base = datetime(2026, 1, 1, 9, 0)
        for offset, stage in enumerate(("contacted", "qualified", "quoted")):
            await enqueue(
                session_factory,
                "pipeline.stage_request",
                {"contactId": appointment.contact_id, "stage": stage, "reason": stage},
                created_at=base + timedelta(seconds=offset),
            )

        stats = await dispatcher.dispatch_batch(10)

        assert stats.succeeded == 3
        async with session_factory() as session:
            result = await session.execute(select(CrmPipeline))
            pipeline = result.scalar_one()
        assert pipeline.stage == "quoted"


class TestBatchLimit:
    """Tests for limit clamping."""

    @pytest.mark.parametrize("limit", [0, -5, "x", None, True, float("nan")])
    async def test_invalid_limits_use_default(self, dispatcher, session_factory, limit):
        for _ in range(12):
            await enqueue(session_factory, "lead.created", {"leadId": "missing"})

        stats = await dispatcher.dispatch_batch(limit)

        assert stats.total == 10

    async def test_large_limit_is_capped(self, dispatcher, session_factory):
        for _ in range(55):
            await enqueue(session_factory, "lead.created", {"leadId": "missing"})

        stats = await dispatcher.dispatch_batch(500)

        assert stats.total == 50
        assert (await dispatcher.dispatch_batch(500)).total == 5


class TestFailureHandling:
    """Tests for unknown types, malformed payloads and handler exceptions."""

    async def test_unknown_type_is_dead_lettered(self, dispatcher, session_factory):
        event_id = await enqueue(session_factory, "invoice.created", {"id": "inv_1"})

        stats = await dispatcher.dispatch_batch(10)

        assert stats.as_counts() == {"total": 1, "succeeded": 0, "failed": 1}
        assert stats.dead_lettered == 1
        event = await load_event(session_factory, event_id)
        assert event.status == OutboxStatus.FAILED.value
        assert "invoice.created" in event.last_error
        assert (await dispatcher.dispatch_batch(10)).total == 0

    async def test_malformed_payload_is_dead_lettered(self, dispatcher, session_factory):
        event_id = await enqueue(session_factory, "quote.decision", {"decision": "accepted"})

        stats = await dispatcher.dispatch_batch(10)

        assert stats.failed == 1
        assert stats.dead_lettered == 1
        event = await load_event(session_factory, event_id)
        assert event.status == OutboxStatus.FAILED.value
        assert "quoteId" in event.last_error

    async def test_non_object_payload_is_dead_lettered(self, dispatcher, session_factory):
        event_id = await enqueue(session_factory, "quote.sent", ["not", "an", "object"])

        stats = await dispatcher.dispatch_batch(10)

        assert stats.failed == 1
        assert (await load_event(session_factory, event_id)).status == OutboxStatus.FAILED.value

    async def test_unparseable_json_is_dead_lettered(self, dispatcher, session_factory):
        event_id = await enqueue(session_factory, "lead.created", {"leadId": "L1"})
        async with session_scope(session_factory) as session:
            await session.execute(
                update(OutboxEvent).where(OutboxEvent.id == event_id).values(payload_json="{not json")
            )

        stats = await dispatcher.dispatch_batch(10)

        assert stats.as_counts() == {"total": 1, "succeeded": 0, "failed": 1}
        assert stats.dead_lettered == 1
        event = await load_event(session_factory, event_id)
        assert event.status == OutboxStatus.FAILED.value
        assert "not valid JSON" in event.last_error

    async def test_handler_failure_is_isolated(
        self, session_factory, settings, calendar_client, make_appointment, make_quote
    ):
        appointment = await make_appointment()
        quote = await make_quote(appointment.contact_id)
        failing = OutboxDispatcher(
            session_factory,
            calendar=calendar_client,
            notifier=RecordingNotifier(fail_with=RuntimeError("sms gateway down")),
            settings=settings,
        )
        good_id = await enqueue(
            session_factory,
            "pipeline.stage_request",
            {"contactId": appointment.contact_id, "stage": "quoted", "reason": "Quote sent"},
        )
        bad_id = await enqueue(session_factory, "quote.sent", {"quoteId": quote.id})

        stats = await failing.dispatch_batch(10)

        assert stats.as_counts() == {"total": 2, "succeeded": 1, "failed": 1}
        assert stats.retried == 1
        assert (await load_event(session_factory, good_id)).status == OutboxStatus.PROCESSED.value
        bad = await load_event(session_factory, bad_id)
        assert bad.status == OutboxStatus.PENDING.value
        assert bad.attempts == 1
        assert "sms gateway down" in bad.last_error
        async with session_factory() as session:
            receipts = (await session.execute(select(SideEffectReceipt))).scalars().all()
        assert receipts == []

    async def test_failed_event_is_redelivered(
        self, session_factory, settings, calendar_client, make_appointment, make_quote
    ):
        appointment = await make_appointment()
        quote = await make_quote(appointment.contact_id)
        event_id = await enqueue(session_factory, "quote.sent", {"quoteId": quote.id})
        failing = OutboxDispatcher(
            session_factory,
            calendar=calendar_client,
            notifier=RecordingNotifier(fail_with=ConnectionError("timeout")),
            settings=settings,
        )
        working_notifier = RecordingNotifier()
        working = OutboxDispatcher(session_factory, calendar=calendar_client, notifier=working_notifier, settings=settings)

        assert (await failing.dispatch_batch(10)).failed == 1
        stats = await working.dispatch_batch(10)

        assert stats.as_counts() == {"total": 1, "succeeded": 1, "failed": 0}
        assert len(working_notifier.quotes_sent) == 1
        event = await load_event(session_factory, event_id)
        assert event.status == OutboxStatus.PROCESSED.value
        assert event.attempts == 1

    async def test_dead_letter_after_max_attempts(
        self, session_factory, calendar_client, make_appointment, make_quote
    ):
        appointment = await make_appointment()
        quote = await make_quote(appointment.contact_id)
        event_id = await enqueue(session_factory, "quote.sent", {"quoteId": quote.id})
        failing = OutboxDispatcher(
            session_factory,
            calendar=calendar_client,
            notifier=RecordingNotifier(fail_with=RuntimeError("down")),
            settings=Settings(outbox_max_attempts=2, calendar_retry_delay_ms=0),
        )

        first = await failing.dispatch_batch(10)
        second = await failing.dispatch_batch(10)
        third = await failing.dispatch_batch(10)

        assert first.retried == 1
        assert second.dead_lettered == 1
        assert third.total == 0
        event = await load_event(session_factory, event_id)
        assert event.status == OutboxStatus.FAILED.value
        assert event.attempts == 2

    async def test_store_failure_propagates(self, dispatcher, session_factory):
        await enqueue(session_factory, "lead.created", {"leadId": "L1"})

        async def broken(ctx, event):
            raise OperationalError("SELECT 1", {}, Exception("database is gone"))

        with patch.dict(HANDLERS, {OutboxEventType.LEAD_CREATED: broken}):
            with pytest.raises(OperationalError):
                await dispatcher.dispatch_batch(10)


class TestIdempotentRedelivery:
    """Tests for handlers running more than once for the same event."""

    async def test_redelivered_decision_is_a_no_op(self, dispatcher, session_factory, notifier, quote_q1):
        event_id = await enqueue(session_factory, "quote.decision", {"quoteId": "Q1", "decision": "accepted"})
        await dispatcher.dispatch_batch(10)
        async with session_factory() as session:
            decided_at = (await session.get(Quote, "Q1")).decision_at

        # simulate a redelivery of the same row
        async with session_scope(session_factory) as session:
            await OutboxRepository(session).reset(event_id)
        stats = await dispatcher.dispatch_batch(10)

        assert stats.succeeded == 1
        assert len(notifier.decisions) == 1
        async with session_factory() as session:
            quote = await session.get(Quote, "Q1")
        assert quote.status == "accepted"
        assert quote.decision_at == decided_at

    async def test_row_claimed_elsewhere_is_not_processed(self, dispatcher, session_factory):
        event_id = await enqueue(session_factory, "lead.created", {"leadId": "L1"})
        async with session_scope(session_factory) as session:
            assert await OutboxRepository(session).claim(event_id) is True

        stats = await dispatcher.dispatch_batch(10)

        assert stats.total == 0
        assert (await load_event(session_factory, event_id)).status == OutboxStatus.PROCESSING.value


class TestReclaimedRows:
    """Tests for a slow dispatcher finishing a row another dispatcher reclaimed."""

    async def stale_claim(self, session_factory, event_id):
        """Claim the row ten minutes in the past, as a dispatcher that stalled would have."""
        claimed_at = utcnow() - timedelta(minutes=10)
        async with session_scope(session_factory) as session:
            repo = OutboxRepository(session)
            assert await repo.claim(event_id, claimed_at=claimed_at) is True
            event = await repo.get_by_id(event_id)
        return ClaimedEvent(event, claimed_at)

    async def test_late_release_keeps_row_processed(self, dispatcher, session_factory):
        event_id = await enqueue(session_factory, "lead.created", {"leadId": "missing"})
        slow_claim = await self.stale_claim(session_factory, event_id)

        assert (await dispatcher.dispatch_batch(10)).succeeded == 1

        stats = BatchStats(total=1)
        await dispatcher._release(slow_claim, "RuntimeError: calendar timeout", stats)

        assert stats.lost_claims == 1
        assert stats.failed == 0
        event = await load_event(session_factory, event_id)
        assert event.status == OutboxStatus.PROCESSED.value
        assert event.attempts == 0
        assert event.last_error is None
        assert (await dispatcher.dispatch_batch(10)).total == 0

    async def test_late_dead_letter_keeps_row_processed(self, dispatcher, session_factory):
        event_id = await enqueue(session_factory, "lead.created", {"leadId": "missing"})
        slow_claim = await self.stale_claim(session_factory, event_id)
        await dispatcher.dispatch_batch(10)

        stats = BatchStats(total=1)
        await dispatcher._dead_letter(slow_claim, "Malformed payload: leadId", stats)

        assert stats.lost_claims == 1
        assert stats.dead_lettered == 0
        assert (await load_event(session_factory, event_id)).status == OutboxStatus.PROCESSED.value

    async def test_late_success_rolls_back_handler_writes(self, dispatcher, session_factory):
        event_id = await enqueue(session_factory, "lead.created", {"leadId": "missing"})
        slow_claim = await self.stale_claim(session_factory, event_id)
        await dispatcher.dispatch_batch(10)
        async with session_factory() as session:
            processed_at = (await OutboxRepository(session).get_by_id(event_id)).processed_at

        async def writes_then_returns(ctx, event):
            await OutboxRepository(ctx.session).insert("lead.created", {"leadId": "late-write"})

        stats = BatchStats(total=1)
        with patch.dict(HANDLERS, {OutboxEventType.LEAD_CREATED: writes_then_returns}):
            await dispatcher._dispatch_one(slow_claim, stats)

        assert stats.lost_claims == 1
        assert stats.succeeded == 0
        event = await load_event(session_factory, event_id)
        assert event.status == OutboxStatus.PROCESSED.value
        assert event.processed_at == processed_at
        async with session_factory() as session:
            rows = (await session.execute(select(OutboxEvent))).scalars().all()
        assert [row.id for row in rows] == [event_id]
