"""Outbox dispatcher: claim a batch of pending events and run their handlers."""

import logging
from datetime import datetime
from typing import List, NamedTuple, Optional

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..calendar import CalendarClientBase, NullCalendarClient
from ..config import Settings, clamp_limit
from ..database.models import OutboxEvent, utcnow
from ..database.repository import OutboxRepository, ReleaseResult
from ..database.session import session_scope
from ..notifications import LoggingNotifier, NotifierBase
from .handlers import HandlerContext, resolve_handler
from .models import BatchStats, ClaimLostError, HandlerOutcome, MalformedPayloadError

logger = logging.getLogger(__name__)

# Store connectivity failures abort the batch instead of counting as a row failure
STORE_ERRORS = (OperationalError, InterfaceError)


class ClaimedEvent(NamedTuple):
    """A row this dispatcher claimed, with the claim timestamp that proves ownership."""
    event: OutboxEvent
    claimed_at: datetime


def summarize_error(exc: BaseException) -> str:
    message = str(exc).strip()
    if message:
        return f"{type(exc).__name__}: {message}"
    return type(exc).__name__


class OutboxDispatcher:
    """Consumes the outbox store one bounded batch at a time.

    Each claimed row runs in its own session: the handler's writes and the
    ``processed`` mark commit together, and a failing handler rolls back only
    its own row.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        calendar: Optional[CalendarClientBase] = None,
        notifier: Optional[NotifierBase] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize the dispatcher.

        Args:
            session_factory: Factory used to open one session per row.
            calendar: Calendar provider client. Defaults to a no-op client.
            notifier: Messaging provider. Defaults to logging only.
            settings: Runtime settings. Defaults to ``Settings()``.
        """
        self.session_factory = session_factory
        self.calendar = calendar or NullCalendarClient()
        self.notifier = notifier or LoggingNotifier()
        self.settings = settings or Settings()

    async def claim_batch(self, limit: int) -> List[ClaimedEvent]:
        """Select up to ``limit`` eligible rows and claim them for this dispatcher."""
        timeout = self.settings.outbox_claim_timeout_seconds
        async with session_scope(self.session_factory) as session:
            repo = OutboxRepository(session)
            candidates = await repo.select_pending(limit, claim_timeout_seconds=timeout)
            claimed = []
            for event in candidates:
                claimed_at = utcnow()
                if await repo.claim(event.id, claim_timeout_seconds=timeout, claimed_at=claimed_at):
                    claimed.append(ClaimedEvent(event, claimed_at))
                else:
                    logger.info(f"Outbox event {event.id} already claimed elsewhere")
        return claimed

    async def dispatch_batch(self, limit: object = None) -> BatchStats:
        """Process one batch of pending events, oldest first.

        Args:
            limit: Requested batch size; clamped to [1, 50], default 10.

        Returns:
            BatchStats for the rows this call claimed.

        Raises:
            OperationalError, InterfaceError: The store could not be reached.
        """
        batch_limit = clamp_limit(limit)
        claims = await self.claim_batch(batch_limit)
        stats = BatchStats(total=len(claims))

        for claim in claims:
            await self._dispatch_one(claim, stats)

        if stats.total:
            logger.info(
                f"Outbox batch: {stats.total} total, {stats.succeeded} succeeded, "
                f"{stats.failed} failed, {stats.skipped} skipped"
            )
        return stats

    async def _dispatch_one(self, claim: ClaimedEvent, stats: BatchStats) -> None:
        event = claim.event
        handler = resolve_handler(event.type)
        if handler is None:
            logger.warning(f"Outbox event {event.id} has unknown type '{event.type}'")
            await self._dead_letter(claim, f"Unknown event type '{event.type}'", stats)
            return

        try:
            async with session_scope(self.session_factory) as session:
                ctx = HandlerContext(
                    session=session,
                    calendar=self.calendar,
                    notifier=self.notifier,
                    settings=self.settings,
                )
                outcome = await handler(ctx, event)
                if not await OutboxRepository(session).mark_processed(event.id, claimed_at=claim.claimed_at):
                    raise ClaimLostError(event.id)
        except STORE_ERRORS:
            raise
        except ClaimLostError:
            # The handler's writes were rolled back with the session
            self._lost(event, stats)
            return
        except MalformedPayloadError as e:
            logger.warning(f"Outbox event {event.id} ({event.type}) has a malformed payload: {e}")
            await self._dead_letter(claim, f"Malformed payload: {e}", stats)
            return
        except Exception as e:
            logger.warning(f"Outbox handler failed for {event.id} ({event.type}): {e}")
            await self._release(claim, summarize_error(e), stats)
            return

        stats.succeeded += 1
        if outcome is HandlerOutcome.SKIPPED:
            stats.skipped += 1

    def _lost(self, event: OutboxEvent, stats: BatchStats) -> None:
        logger.warning(f"Outbox event {event.id} was reclaimed by another dispatcher; leaving it alone")
        stats.lost_claims += 1

    async def _dead_letter(self, claim: ClaimedEvent, reason: str, stats: BatchStats) -> None:
        async with session_scope(self.session_factory) as session:
            marked = await OutboxRepository(session).mark_failed(
                claim.event.id, reason, claimed_at=claim.claimed_at
            )
        if not marked:
            self._lost(claim.event, stats)
            return
        stats.failed += 1
        stats.dead_lettered += 1

    async def _release(self, claim: ClaimedEvent, reason: str, stats: BatchStats) -> None:
        async with session_scope(self.session_factory) as session:
            result = await OutboxRepository(session).release_for_retry(
                claim.event.id,
                reason,
                max_attempts=self.settings.outbox_max_attempts,
                claimed_at=claim.claimed_at,
            )
        if result is ReleaseResult.LOST:
            self._lost(claim.event, stats)
            return
        stats.failed += 1
        if result is ReleaseResult.REQUEUED:
            stats.retried += 1
        else:
            stats.dead_lettered += 1
