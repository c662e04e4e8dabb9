"""Cooperative polling loop around the outbox dispatcher."""

import asyncio
import logging
from typing import Optional

from .dispatcher import OutboxDispatcher
from .models import BatchStats

logger = logging.getLogger(__name__)

# Shortest sleep between empty batches
MIN_IDLE_SECONDS = 1.0


class OutboxPoller:
    """Runs dispatch batches back to back, sleeping only when the outbox is idle."""

    def __init__(
        self,
        dispatcher: OutboxDispatcher,
        batch_size: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
    ):
        settings = dispatcher.settings
        self.dispatcher = dispatcher
        self.batch_size = batch_size if batch_size is not None else settings.outbox_batch_size
        if poll_interval_seconds is None:
            poll_interval_seconds = settings.outbox_poll_interval_seconds
        if poll_interval_seconds < MIN_IDLE_SECONDS:
            logger.info(f"Poll interval {poll_interval_seconds}s raised to {MIN_IDLE_SECONDS}s")
            poll_interval_seconds = MIN_IDLE_SECONDS
        self.poll_interval_seconds = poll_interval_seconds
        self.batches = 0

    async def run_once(self) -> BatchStats:
        stats = await self.dispatcher.dispatch_batch(self.batch_size)
        self.batches += 1
        return stats

    async def run_forever(
        self,
        stop_event: Optional[asyncio.Event] = None,
        max_batches: Optional[int] = None,
    ) -> None:
        """Poll until ``stop_event`` is set (or ``max_batches`` batches ran).

        A non-empty batch is followed immediately by another one; an empty
        one by a sleep of at least MIN_IDLE_SECONDS. Store errors propagate
        and end the loop.
        """
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Outbox poller started (batch size {self.batch_size}, idle sleep {self.poll_interval_seconds}s)")

        while not stop_event.is_set():
            if max_batches is not None and self.batches >= max_batches:
                break
            stats = await self.run_once()
            if max_batches is not None and self.batches >= max_batches:
                break
            if stats.total == 0:
                await self._idle(stop_event)

        logger.info(f"Outbox poller stopped after {self.batches} batches")

    async def _idle(self, stop_event: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval_seconds)
        except asyncio.TimeoutError:
            pass
