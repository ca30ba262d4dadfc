"""
generation.py — Song Creator · Generation Tracker
=================================================
Tracks the backend's long-running music/video job:

  NOT_STARTED → GENERATING → COMPLETE | FAILED

Progress arrives either pushed over the channel or from a poll loop that
hits the progress endpoint every ``poll_interval_ms``.  Poll results are not
applied here; they are posted to the orchestrator as ProgressPolled events
so every state change goes through the session's single writer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .errors import GenerationError, ProtocolError
from .events import ProgressPolled
from .models import GenerationSnapshot, GenerationStatus

log = logging.getLogger("song_creator.generation")

TERMINAL = frozenset({GenerationStatus.COMPLETE, GenerationStatus.FAILED})


class GenerationTracker:
    def __init__(self, poll_interval_ms: int = 3000) -> None:
        self.poll_interval = poll_interval_ms / 1000.0
        self.status = GenerationStatus.NOT_STARTED
        self.progress = 0
        self.video_url: Optional[str] = None
        self.error: Optional[str] = None
        self.backend_status: Optional[str] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._sink: Optional[Callable[[Any], None]] = None

    @classmethod
    def from_config(cls, config) -> "GenerationTracker":
        return cls(poll_interval_ms=config.poll_interval_ms)

    def attach(self, sink: Callable[[Any], None]) -> None:
        self._sink = sink

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start(self, epoch: int, poll: Optional[Callable[[], Awaitable[Any]]] = None) -> bool:
        """Enter GENERATING.  Returns False when a job was already started."""
        if self.status is not GenerationStatus.NOT_STARTED:
            log.warning("event=generation_start_ignored status=%s", self.status.value)
            return False
        self.status = GenerationStatus.GENERATING
        self.progress = 0
        log.info("event=generation_started source=%s", "poll" if poll else "push")
        if poll is not None:
            self._poll_task = asyncio.create_task(self._poll_loop(epoch, poll), name="generation_poll")
        return True

    async def _poll_loop(self, epoch: int, fetch: Callable[[], Awaitable[Any]]) -> None:
        while self.status is GenerationStatus.GENERATING:
            await asyncio.sleep(self.poll_interval)
            try:
                report = await fetch()
            except (GenerationError, ProtocolError) as exc:
                log.warning("event=generation_poll_failed error=%s", exc)
                continue
            if self._sink is not None:
                self._sink(ProgressPolled(epoch, report))

    def apply_progress(self, value: int) -> bool:
        """Raise progress to *value*.  Lower values are ignored."""
        if self.status is not GenerationStatus.GENERATING:
            return False
        value = max(0, min(100, int(value)))
        if value <= self.progress:
            return False
        self.progress = value
        log.debug("event=generation_progress progress=%d", value)
        return True

    def complete(self, video_url: Optional[str]) -> bool:
        if self.terminal:
            return False
        self.status = GenerationStatus.COMPLETE
        self.progress = 100
        self.video_url = video_url
        self.stop()
        log.info("event=generation_complete video_url=%s", video_url)
        return True

    def fail(self, detail: str) -> bool:
        if self.terminal:
            return False
        self.status = GenerationStatus.FAILED
        self.error = detail
        self.stop()
        log.error("event=generation_failed error=%s", detail)
        return True

    def stop(self) -> None:
        """Cancel polling; status is left as it is."""
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()

    def reset(self) -> None:
        self.stop()
        self.status = GenerationStatus.NOT_STARTED
        self.progress = 0
        self.video_url = None
        self.error = None
        self.backend_status = None

    def snapshot(self) -> GenerationSnapshot:
        return GenerationSnapshot(
            status=self.status,
            progress=self.progress,
            video_url=self.video_url,
            error=self.error,
            backend_status=self.backend_status,
        )
