"""
transport.py — Song Creator · Transport Channel
===============================================
Owns one websocket connection to the backend and reports what happens to it
as events for a single observer:

  ChannelOpened    handshake completed
  ChannelMessage   one inbound frame, in arrival order
  ChannelClosed    connection went away (deliberate or not), or never came up

Every open() gets a fresh connection id, carried by its events, so the
observer can drop anything from a connection it has already given up on.
The transport never reconnects by itself; that is the reconnection policy's
decision.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import SubmissionError
from .events import ChannelClosed, ChannelMessage, ChannelOpened
from .models import ConnectionState

log = logging.getLogger("song_creator.transport")

NORMAL_CLOSURE = 1000


class ChannelTransport:
    def __init__(
        self,
        url: str,
        open_timeout: float = 10.0,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self.state = ConnectionState.DISCONNECTED
        self.connection_id = 0
        self._connect = connect or websockets.connect
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None
        self._deliberate = False
        self._sink: Optional[Callable[[Any], None]] = None

    @classmethod
    def from_config(cls, config) -> "ChannelTransport":
        return cls(config.resolved_channel_url(), open_timeout=config.open_timeout_sec)

    def attach(self, sink: Callable[[Any], None]) -> None:
        """Register the single observer that receives channel events."""
        self._sink = sink

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED and self._ws is not None

    def _emit(self, event) -> None:
        if self._sink is not None:
            self._sink(event)

    # -- lifecycle -------------------------------------------------------------

    async def open(self) -> None:
        """Connect.  Failure is reported as ChannelClosed(opened=False)."""
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            log.debug("event=channel_open_skipped state=%s", self.state.value)
            return

        self.connection_id += 1
        conn_id = self.connection_id
        self._deliberate = False
        self.state = ConnectionState.CONNECTING
        log.info("event=channel_connecting url=%s conn_id=%d", self.url, conn_id)

        try:
            ws = await asyncio.wait_for(self._connect(self.url), timeout=self.open_timeout)
        except asyncio.CancelledError:
            if conn_id == self.connection_id and self.state is ConnectionState.CONNECTING:
                self.state = ConnectionState.DISCONNECTED
            raise
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            if conn_id != self.connection_id or self._deliberate:
                return
            self.state = ConnectionState.DISCONNECTED
            detail = str(exc) or type(exc).__name__
            log.warning("event=channel_open_failed conn_id=%d error=%s", conn_id, detail)
            self._emit(ChannelClosed(conn_id, deliberate=False, opened=False, error=detail))
            return

        if conn_id != self.connection_id or self._deliberate:
            # close() was called while the handshake was in flight
            log.info("event=channel_open_discarded conn_id=%d", conn_id)
            await ws.close(NORMAL_CLOSURE)
            return

        self._ws = ws
        self.state = ConnectionState.CONNECTED
        log.info("event=channel_connected conn_id=%d", conn_id)
        self._emit(ChannelOpened(conn_id))
        self._reader = asyncio.create_task(self._read(ws, conn_id), name=f"channel_reader_{conn_id}")

    async def _read(self, ws, conn_id: int) -> None:
        error: Optional[str] = None
        try:
            async for raw in ws:
                self._emit(ChannelMessage(conn_id, raw))
        except ConnectionClosed as exc:
            error = str(exc)
        except (WebSocketException, OSError) as exc:
            error = str(exc) or type(exc).__name__

        if conn_id != self.connection_id:
            return
        deliberate = self._deliberate
        self._ws = None
        self.state = ConnectionState.DISCONNECTED
        code = getattr(ws, "close_code", None)
        reason = getattr(ws, "close_reason", None) or ""
        log.info(
            "event=channel_closed conn_id=%d deliberate=%s code=%s reason=%s",
            conn_id, deliberate, code, reason,
        )
        self._emit(ChannelClosed(conn_id, deliberate=deliberate, code=code, reason=reason, error=error))

    def close(self) -> None:
        """Deliberate close.  Idempotent; never triggers reconnection."""
        self._deliberate = True
        if self.state is ConnectionState.DISCONNECTED:
            return
        if self.state is ConnectionState.CONNECTING:
            # the pending open() sees the flag and discards its socket
            self.state = ConnectionState.DISCONNECTED
            log.info("event=channel_close_while_connecting conn_id=%d", self.connection_id)
            return
        if self.state is ConnectionState.CLOSING:
            return

        self.state = ConnectionState.CLOSING
        log.info("event=channel_closing conn_id=%d", self.connection_id)
        self._closer = asyncio.create_task(
            self._close_socket(self._ws, self._reader), name="channel_closer"
        )

    async def _close_socket(self, ws, reader: Optional[asyncio.Task]) -> None:
        try:
            if ws is not None:
                await ws.close(NORMAL_CLOSURE)
        except (WebSocketException, OSError) as exc:
            log.warning("event=channel_close_error error=%s", exc)
        finally:
            if reader is not None:
                try:
                    await asyncio.wait_for(asyncio.shield(reader), timeout=self.open_timeout)
                except asyncio.TimeoutError:
                    reader.cancel()
            if self.state is ConnectionState.CLOSING:
                self._ws = None
                self.state = ConnectionState.DISCONNECTED

    async def wait_closed(self) -> None:
        if self._closer is not None and not self._closer.done():
            await self._closer

    # -- outbound --------------------------------------------------------------

    async def send(self, text: str) -> None:
        """Send one answer.  Raises SubmissionError immediately when not connected."""
        if not self.connected:
            raise SubmissionError("channel is not open")
        try:
            await self._ws.send(text)
        except (ConnectionClosed, OSError) as exc:
            raise SubmissionError(f"channel closed while sending: {exc}") from exc
        log.info("event=channel_send conn_id=%d chars=%d", self.connection_id, len(text))
