"""Generation job tracking: monotonic progress, terminal states, polling."""

import asyncio

import pytest

from song_creator.errors import GenerationError
from song_creator.events import ProgressPolled
from song_creator.generation import GenerationTracker
from song_creator.models import GenerationStatus
from song_creator.protocol import ProgressReport


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestProgress:
    @pytest.mark.asyncio
    async def test_start_once(self):
        tracker = GenerationTracker()
        assert tracker.start(epoch=0)
        assert tracker.status is GenerationStatus.GENERATING
        assert tracker.progress == 0
        assert not tracker.start(epoch=0)

    def test_ignores_progress_before_start(self):
        tracker = GenerationTracker()
        assert not tracker.apply_progress(20)
        assert tracker.progress == 0

    @pytest.mark.asyncio
    async def test_out_of_order_progress(self):
        tracker = GenerationTracker()
        tracker.start(epoch=0)
        assert tracker.apply_progress(60)
        assert not tracker.apply_progress(40)
        assert tracker.progress == 60
        assert tracker.apply_progress(150)
        assert tracker.progress == 100

    @pytest.mark.asyncio
    async def test_complete_is_terminal(self):
        tracker = GenerationTracker()
        tracker.start(epoch=0)
        assert tracker.complete("https://x/y")
        assert tracker.terminal
        assert tracker.video_url == "https://x/y"
        assert not tracker.fail("late error")
        assert tracker.status is GenerationStatus.COMPLETE
        assert not tracker.apply_progress(10)

    @pytest.mark.asyncio
    async def test_fail_records_detail(self):
        tracker = GenerationTracker()
        tracker.start(epoch=0)
        tracker.apply_progress(30)
        assert tracker.fail("render farm down")
        snap = tracker.snapshot()
        assert snap.status is GenerationStatus.FAILED
        assert snap.error == "render farm down"
        assert snap.progress == 30


class TestPolling:
    @pytest.mark.asyncio
    async def test_posts_reports_with_epoch(self):
        tracker = GenerationTracker(poll_interval_ms=10)
        events = []
        tracker.attach(events.append)

        async def fetch():
            return ProgressReport(progress=len(events) * 10)

        tracker.start(epoch=3, poll=fetch)
        await wait_until(lambda: len(events) >= 2)
        tracker.stop()

        assert all(isinstance(e, ProgressPolled) and e.epoch == 3 for e in events)
        assert not tracker.polling

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self):
        tracker = GenerationTracker(poll_interval_ms=10)
        events = []
        tracker.attach(events.append)
        calls = []

        async def fetch():
            calls.append(1)
            if len(calls) == 1:
                raise GenerationError("HTTP 502")
            return ProgressReport(progress=50)

        tracker.start(epoch=0, poll=fetch)
        await wait_until(lambda: events)
        tracker.stop()
        assert len(calls) >= 2
        assert events[0].report.progress == 50

    @pytest.mark.asyncio
    async def test_complete_stops_polling(self):
        tracker = GenerationTracker(poll_interval_ms=10)

        async def fetch():
            return ProgressReport(progress=1)

        tracker.start(epoch=0, poll=fetch)
        assert tracker.polling
        tracker.complete(None)
        await asyncio.sleep(0)
        assert not tracker.polling

    @pytest.mark.asyncio
    async def test_reset_clears_everything(self):
        tracker = GenerationTracker(poll_interval_ms=10)

        async def fetch():
            return ProgressReport(progress=1)

        tracker.start(epoch=0, poll=fetch)
        tracker.apply_progress(70)
        tracker.reset()
        await asyncio.sleep(0)
        assert not tracker.polling
        assert tracker.status is GenerationStatus.NOT_STARTED
        assert tracker.progress == 0
        assert tracker.start(epoch=1)
