"""
reconnect.py — Song Creator · Reconnection Policy
=================================================
Backoff and retry governance for unexpected channel loss.

Delay schedule for consecutive disconnects (defaults base=1000 ms,
cap=10000 ms, max_attempts=5):

    disconnect 1 → retry after 1 s
    disconnect 2 → retry after 2 s
    disconnect 3 → retry after 4 s
    disconnect 4 → retry after 8 s
    disconnect 5 → budget exhausted, no retry

A successful connection resets the count.  The policy owns the only timer
handle; cancel() and reset() are safe to call at any time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

log = logging.getLogger("song_creator.reconnect")


def backoff_delay(attempt: int, base_ms: int, cap_ms: int) -> float:
    """Seconds to wait before retry number *attempt* (zero-based)."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return min(base_ms * (2 ** attempt), cap_ms) / 1000.0


class ReconnectPolicy:
    def __init__(self, base_ms: int = 1000, cap_ms: int = 10_000, max_attempts: int = 5) -> None:
        self.base_ms = base_ms
        self.cap_ms = cap_ms
        self.max_attempts = max_attempts
        self.attempt_count = 0
        self.last_delay: Optional[float] = None
        self.exhausted = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @classmethod
    def from_config(cls, config) -> "ReconnectPolicy":
        return cls(base_ms=config.base_ms, cap_ms=config.cap_ms, max_attempts=config.max_attempts)

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, callback: Callable[[], None]) -> Optional[float]:
        """Count one disconnect and arm a retry timer.

        Returns the delay in seconds, or None once the attempt budget is
        spent.  *callback* runs on the event loop when the timer fires.
        """
        self.cancel()
        if self.exhausted:
            return None

        self.attempt_count += 1
        if self.attempt_count >= self.max_attempts:
            self.exhausted = True
            self.last_delay = None
            log.error("event=reconnect_exhausted attempts=%d", self.attempt_count)
            return None

        delay = backoff_delay(self.attempt_count - 1, self.base_ms, self.cap_ms)
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire, callback)
        self.last_delay = delay
        log.warning(
            "event=reconnect_scheduled attempt=%d/%d delay=%.1fs",
            self.attempt_count, self.max_attempts, delay,
        )
        return delay

    def _fire(self, callback: Callable[[], None]) -> None:
        self._handle = None
        callback()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            log.debug("event=reconnect_timer_cancel")
        self._handle = None

    def reset(self) -> None:
        """Forget every attempt; called on a successful connection and on session reset."""
        self.cancel()
        self.attempt_count = 0
        self.last_delay = None
        self.exhausted = False
