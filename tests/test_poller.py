"""Tests for the outbox polling loop."""

import asyncio

import pytest

from ops_integration.outbox import BatchStats, OutboxPoller
from ops_integration.outbox.poller import MIN_IDLE_SECONDS


class ScriptedDispatcher:
    """Dispatcher stand-in returning scripted batch totals."""

    def __init__(self, settings, totals):
        self.settings = settings
        self.totals = list(totals)
        self.limits = []

    async def dispatch_batch(self, limit=None):
        self.limits.append(limit)
        total = self.totals.pop(0) if self.totals else 0
        return BatchStats(total=total, succeeded=total)


class TestOutboxPoller:
    """Tests for OutboxPoller."""

    async def test_run_once_uses_batch_size(self, settings):
        dispatcher = ScriptedDispatcher(settings, [3])

        stats = await OutboxPoller(dispatcher, batch_size=25).run_once()

        assert stats.total == 3
        assert dispatcher.limits == [25]

    async def test_defaults_come_from_settings(self, settings):
        poller = OutboxPoller(ScriptedDispatcher(settings, []))

        assert poller.batch_size == settings.outbox_batch_size
        assert poller.poll_interval_seconds == max(settings.outbox_poll_interval_seconds, MIN_IDLE_SECONDS)

    @pytest.mark.parametrize("interval", [0, -1, 0.001])
    async def test_short_interval_is_raised_to_minimum(self, settings, interval):
        poller = OutboxPoller(ScriptedDispatcher(settings, []), poll_interval_seconds=interval)
        assert poller.poll_interval_seconds == MIN_IDLE_SECONDS

    async def test_zero_interval_does_not_spin_on_empty_outbox(self, settings):
        stop = asyncio.Event()
        dispatcher = ScriptedDispatcher(settings, [])
        poller = OutboxPoller(dispatcher, poll_interval_seconds=0)
        asyncio.get_running_loop().call_later(0.2, stop.set)

        await asyncio.wait_for(poller.run_forever(stop_event=stop), timeout=5)

        assert len(dispatcher.limits) == 1

    async def test_busy_batches_run_back_to_back(self, settings, monkeypatch):
        idles = []

        async def record_idle(self, stop_event):
            idles.append(self.poll_interval_seconds)

        monkeypatch.setattr(OutboxPoller, "_idle", record_idle)
        dispatcher = ScriptedDispatcher(settings, [10, 10, 0, 4])

        await OutboxPoller(dispatcher, poll_interval_seconds=30).run_forever(max_batches=4)

        assert len(dispatcher.limits) == 4
        assert idles == [30]

    async def test_stop_event_ends_idle_sleep(self, settings):
        stop = asyncio.Event()
        poller = OutboxPoller(ScriptedDispatcher(settings, []), poll_interval_seconds=3600)
        asyncio.get_running_loop().call_later(0.05, stop.set)

        await asyncio.wait_for(poller.run_forever(stop_event=stop), timeout=5)

        assert poller.batches == 1

    async def test_preset_stop_event_runs_nothing(self, settings):
        stop = asyncio.Event()
        stop.set()
        dispatcher = ScriptedDispatcher(settings, [5])

        await OutboxPoller(dispatcher).run_forever(stop_event=stop)

        assert dispatcher.limits == []

    async def test_store_errors_propagate(self, settings):
        class Broken(ScriptedDispatcher):
            async def dispatch_batch(self, limit=None):
                raise ConnectionError("database unreachable")

        with pytest.raises(ConnectionError):
            await OutboxPoller(Broken(settings, [])).run_forever(max_batches=3)
