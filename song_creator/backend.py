"""
backend.py — Song Creator · Request/Response Backend Client
===========================================================
httpx client for the REST deployment and for speech transcription, which
both deployment modes use.

  POST /start-interview
  POST /get-question {index}    or    POST /questions/{index}
  POST /submit-answer {answer, questionIndex}
  POST /generate-music {answers}
  GET  /generation-progress
  POST /transcribe (multipart "file")  → {transcription}

Every failure comes back as a domain error; httpx exceptions never escape.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from .errors import (
    ConnectivityError,
    GenerationError,
    ProtocolError,
    SongCreatorError,
    SubmissionError,
    TranscriptionError,
)
from .models import ConnectionState, Question
from .protocol import ProgressReport, QuestionPayload, decode_audio

log = logging.getLogger("song_creator.backend")


class BackendClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        question_route: str = "body",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.question_route = question_route
        self.state = ConnectionState.DISCONNECTED
        self._http_client = client

    @classmethod
    def from_config(cls, config) -> "BackendClient":
        return cls(
            config.api_base,
            timeout=config.request_timeout_sec,
            question_route=config.question_route,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        error_cls: type[SongCreatorError],
        **kwargs: Any,
    ) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            log.warning(
                "event=backend_http_error method=%s path=%s status=%d",
                method, path, exc.response.status_code,
            )
            raise error_cls(f"{method} {path} returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            log.warning("event=backend_request_failed method=%s path=%s error=%s", method, path, exc)
            raise error_cls(f"{method} {path} failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise error_cls(f"{method} {path} returned invalid JSON") from exc
        log.debug("event=backend_response method=%s path=%s", method, path)
        return data

    # -- interview -------------------------------------------------------------

    async def start_interview(self) -> Any:
        self.state = ConnectionState.CONNECTING
        try:
            data = await self._request("POST", "/start-interview", ConnectivityError)
        except ConnectivityError:
            self.state = ConnectionState.DISCONNECTED
            raise
        self.state = ConnectionState.CONNECTED
        log.info("event=interview_started")
        return data

    async def get_question(self, index: int) -> Question:
        if self.question_route == "path":
            data = await self._request("POST", f"/questions/{index}", ConnectivityError)
        else:
            data = await self._request("POST", "/get-question", ConnectivityError, json={"index": index})
        if not isinstance(data, dict):
            raise ConnectivityError("question payload is not a JSON object")
        try:
            payload = QuestionPayload.model_validate(data)
        except ValidationError as exc:
            raise ConnectivityError(f"invalid question payload: {exc.error_count()} error(s)") from exc
        try:
            audio = decode_audio(payload.audio) if payload.audio else None
        except ProtocolError as exc:
            log.warning("event=question_audio_invalid index=%d error=%s", index, exc)
            audio = None
        return Question(index=index, text=payload.text, audio=audio)

    async def submit_answer(self, answer: str, question_index: int) -> Any:
        return await self._request(
            "POST",
            "/submit-answer",
            SubmissionError,
            json={"answer": answer, "questionIndex": question_index},
        )

    # -- generation ------------------------------------------------------------

    async def generate_music(self, answers: list[str]) -> Any:
        data = await self._request("POST", "/generate-music", GenerationError, json={"answers": answers})
        log.info("event=generation_requested answers=%d", len(answers))
        return data

    async def generation_progress(self) -> ProgressReport:
        data = await self._request("GET", "/generation-progress", GenerationError)
        return ProgressReport.from_payload(data)

    # -- transcription ---------------------------------------------------------

    async def transcribe(self, payload: bytes, filename: str = "audio.wav", mime: str = "audio/wav") -> str:
        data = await self._request(
            "POST",
            "/transcribe",
            TranscriptionError,
            files={"file": (filename, payload, mime)},
        )
        if not isinstance(data, dict):
            raise TranscriptionError("transcription payload is not a JSON object")
        text = data.get("transcription") or ""
        if not isinstance(text, str):
            raise TranscriptionError("transcription is not a string")
        text = text.strip()
        log.info("event=transcription_done chars=%d", len(text))
        return text
