"""
server.py — Song Creator · FastAPI Control Plane
================================================
Local control plane between the presentation layer and the session
orchestrator.  Every intent endpoint posts one event, waits for the queue to
drain, and answers with the resulting snapshot.

Endpoints
---------
  GET  /health                    Liveness
  GET  /config                    Active configuration
  GET  /session                   Current snapshot
  POST /session/start             Start (or manually reconnect) the interview
  POST /session/recording/start   Open the microphone
  POST /session/recording/stop    Finish the take and transcribe it
  PUT  /session/answer            Edit the pending answer {text}
  POST /session/answer/submit     Send the pending answer
  POST /session/reset             Tear everything down
  WS   /ws/state                  One JSON snapshot per change
  WS   /ws/logs                   Log records
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional, Set

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .config import SongCreatorConfig
from .models import SessionSnapshot
from .orchestrator import SessionOrchestrator

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"
LOG_DATEFMT = "%H:%M:%S"

log = logging.getLogger("song_creator.server")


# ---------------------------------------------------------------------------
# WebSocket fan-out
# ---------------------------------------------------------------------------

class Broadcaster:
    """Fan-out hub for JSON events to every connected WebSocket client.

    The last ``history`` events are replayed to clients that join late.
    """
    def __init__(self, history: int = 500) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []
        self._limit = history

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in list(self._history):
            await ws.send_text(json.dumps(event))

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict) -> None:
        if self._limit:
            self._history.append(event)
            del self._history[:-self._limit]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event))
            except (WebSocketDisconnect, RuntimeError, OSError):
                dead.add(ws)
        self._clients -= dead


class _WsBroadcastHandler(logging.Handler):
    """Logging handler that forwards song_creator log records to /ws/logs clients."""
    def __init__(self, broadcaster: Broadcaster) -> None:
        super().__init__()
        self.broadcaster = broadcaster
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    def emit(self, record: logging.LogRecord) -> None:
        loop = self.loop
        if loop is None or loop.is_closed():
            return
        event = {
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        # audio callbacks log from their own threads
        loop.call_soon_threadsafe(lambda: loop.create_task(self.broadcaster.broadcast(event)))


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if os.getenv("SONG_CREATOR_DEBUG") else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class AnswerUpdate(BaseModel):
    text: str


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

def create_app(
    orchestrator: Optional[SessionOrchestrator] = None,
    config: Optional[SongCreatorConfig] = None,
) -> FastAPI:
    """Build the control plane around one session orchestrator."""
    if config is None:
        config = orchestrator.config if orchestrator is not None else SongCreatorConfig.from_env()

    logs = Broadcaster(history=500)
    states = Broadcaster(history=0)
    ws_handler = _WsBroadcastHandler(logs)
    ws_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    pending: Set[asyncio.Task] = set()

    def _on_snapshot(snap: SessionSnapshot) -> None:
        task = asyncio.get_running_loop().create_task(states.broadcast(snap.model_dump(mode="json")))
        pending.add(task)
        task.add_done_callback(pending.discard)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        orch = orchestrator or SessionOrchestrator(config)
        app.state.orchestrator = orch
        ws_handler.loop = asyncio.get_running_loop()
        package_log = logging.getLogger("song_creator")
        package_log.addHandler(ws_handler)
        unsubscribe = orch.subscribe(_on_snapshot)
        log.info("event=server_start mode=%s", config.backend.mode)
        async with orch:
            yield
            log.info("event=server_shutdown phase=%s", orch.snapshot().phase.value)
        unsubscribe()
        app.state.orchestrator = None
        package_log.removeHandler(ws_handler)
        ws_handler.loop = None
        log.info("event=server_stopped")

    app = FastAPI(
        title="Song Creator",
        version=__version__,
        description="Guided audio interview that ends in a generated music video",
        lifespan=_lifespan,
    )
    app.state.orchestrator = None
    app.state.logs = logs
    app.state.states = states

    # The presentation layer is served from its own origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _orchestrator() -> SessionOrchestrator:
        orch = app.state.orchestrator
        if orch is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Session is not running.",
            )
        return orch

    async def _apply(intent) -> JSONResponse:
        orch = _orchestrator()
        intent(orch)
        await orch.flush()
        return JSONResponse(orch.snapshot().model_dump(mode="json"))

    # -- Endpoints ------------------------------------------------------------

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        orch = app.state.orchestrator
        body: dict[str, Any] = {"status": "ok", "version": __version__, "mode": config.backend.mode}
        if orch is not None:
            snap = orch.snapshot()
            body["phase"] = snap.phase.value
            body["connection"] = snap.connection.value
        return JSONResponse(body)

    @app.get("/config")
    async def get_config() -> JSONResponse:
        return JSONResponse(config.model_dump(mode="json"))

    @app.get("/session")
    async def get_session() -> JSONResponse:
        return JSONResponse(_orchestrator().snapshot().model_dump(mode="json"))

    @app.post("/session/start")
    async def start_session() -> JSONResponse:
        return await _apply(lambda o: o.start())

    @app.post("/session/recording/start")
    async def start_recording() -> JSONResponse:
        return await _apply(lambda o: o.start_recording())

    @app.post("/session/recording/stop")
    async def stop_recording() -> JSONResponse:
        return await _apply(lambda o: o.stop_recording())

    @app.put("/session/answer")
    async def edit_answer(body: AnswerUpdate) -> JSONResponse:
        return await _apply(lambda o: o.set_answer(body.text))

    @app.post("/session/answer/submit")
    async def submit_answer() -> JSONResponse:
        return await _apply(lambda o: o.submit_answer())

    @app.post("/session/reset")
    async def reset_session() -> JSONResponse:
        return await _apply(lambda o: o.reset())

    @app.websocket("/ws/state")
    async def ws_state(ws: WebSocket) -> None:
        """Streams the session snapshot as JSON every time it changes."""
        await states.connect(ws)
        orch = app.state.orchestrator
        if orch is not None:
            await ws.send_text(json.dumps(orch.snapshot().model_dump(mode="json")))
        log.info("event=ws_state_client_connected remote=%s", ws.client)
        try:
            while True:
                # Keep the connection alive; we only send, never receive
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            states.disconnect(ws)
            log.info("event=ws_state_client_disconnected remote=%s", ws.client)

    @app.websocket("/ws/logs")
    async def ws_logs(ws: WebSocket) -> None:
        """
        Real-time log stream.  Each record is sent as:
        {"level": "INFO", "logger": "song_creator.orchestrator", "msg": "...", "ts": 1700000000.0}
        """
        await logs.connect(ws)
        log.info("event=ws_log_client_connected remote=%s", ws.client)
        try:
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            logs.disconnect(ws)
            log.info("event=ws_log_client_disconnected remote=%s", ws.client)

    return app


def main() -> None:
    """Console entry point: ``song-creator``."""
    configure_logging()
    config = SongCreatorConfig.from_env()
    host = os.getenv("SONG_CREATOR_HOST", "127.0.0.1")
    port = int(os.getenv("SONG_CREATOR_PORT", "8765"))
    log.info("event=server_boot host=%s port=%d mode=%s", host, port, config.backend.mode)
    uvicorn.run(create_app(config=config), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
