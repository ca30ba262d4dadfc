"""
protocol.py — Song Creator · Wire Protocol
==========================================
Typed decoding of the JSON messages the backend pushes over the channel, and of
the payloads returned by the request/response endpoints.

Inbound channel messages (``type`` discriminates):
  speech               {text, audio}            audio is base64 (mp3)
  status_update        {status}
  generation_progress  {progress}
  music_complete       {data: {video_url}}
  music_error          {data}
  error                {message}

Outbound channel traffic is the plain answer text, not JSON.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from .errors import ProtocolError

log = logging.getLogger("song_creator.protocol")


def decode_audio(encoded: str) -> bytes:
    """Decode a base64 speech payload; raises ProtocolError on bad input."""
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProtocolError(f"speech audio is not valid base64: {exc}") from exc


def _coerce_progress(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip().rstrip("%")
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return value


# ---------------------------------------------------------------------------
# Channel messages
# ---------------------------------------------------------------------------

class SpeechMessage(BaseModel):
    type: Literal["speech"]
    text: str = ""
    audio: Optional[str] = None

    def audio_bytes(self) -> Optional[bytes]:
        if not self.audio:
            return None
        return decode_audio(self.audio)


class StatusUpdateMessage(BaseModel):
    type: Literal["status_update"]
    status: str


class GenerationProgressMessage(BaseModel):
    type: Literal["generation_progress"]
    progress: int

    @field_validator("progress", mode="before")
    @classmethod
    def coerce_progress(cls, value: Any) -> Any:
        return _coerce_progress(value)


class MusicData(BaseModel):
    model_config = ConfigDict(extra="allow")

    video_url: Optional[str] = None


class MusicCompleteMessage(BaseModel):
    type: Literal["music_complete"]
    data: MusicData = Field(default_factory=MusicData)


class MusicErrorMessage(BaseModel):
    type: Literal["music_error"]
    data: str = "unknown error"

    @field_validator("data", mode="before")
    @classmethod
    def stringify_detail(cls, value: Any) -> Any:
        if value is None:
            return "unknown error"
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return str(value)


class ErrorMessage(BaseModel):
    type: Literal["error"]
    message: str = "unknown error"


ServerMessage = Annotated[
    Union[
        SpeechMessage,
        StatusUpdateMessage,
        GenerationProgressMessage,
        MusicCompleteMessage,
        MusicErrorMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_SERVER_MESSAGE = TypeAdapter(ServerMessage)

KNOWN_TYPES: frozenset[str] = frozenset({
    "speech",
    "status_update",
    "generation_progress",
    "music_complete",
    "music_error",
    "error",
})


def parse_message(raw: Union[str, bytes]) -> Optional[ServerMessage]:
    """Decode one channel frame.

    Returns None for well-formed messages of a type this client does not
    handle.  Raises ProtocolError for anything that is not a JSON object or
    does not match the schema of its declared type.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"message is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise ProtocolError("message is not a JSON object")

    kind = data.get("type")
    if kind not in KNOWN_TYPES:
        log.warning("event=message_ignored type=%r", kind)
        return None

    try:
        return _SERVER_MESSAGE.validate_python(data)
    except ValidationError as exc:
        raise ProtocolError(f"invalid {kind} message: {exc.error_count()} error(s)") from exc


# ---------------------------------------------------------------------------
# Request/response payloads
# ---------------------------------------------------------------------------

COMPLETE_STATUSES: frozenset[str] = frozenset({"complete", "completed", "done", "music_complete"})
FAILED_STATUSES: frozenset[str] = frozenset({"error", "failed", "music_error"})


class QuestionPayload(BaseModel):
    """Body of ``/get-question`` or ``/questions/{index}``."""
    model_config = ConfigDict(extra="ignore")

    text: str = Field(default="", validation_alias=AliasChoices("question", "text"))
    audio: Optional[str] = None


class ProgressReport(BaseModel):
    """Body of ``/generation-progress`` and ``/generate-music``."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    progress: Optional[int] = None
    status: Optional[str] = None
    video_url: Optional[str] = None
    error: Optional[str] = None

    @field_validator("progress", mode="before")
    @classmethod
    def coerce_progress(cls, value: Any) -> Any:
        if value is None:
            return None
        return _coerce_progress(value)

    @classmethod
    def from_payload(cls, data: Any) -> "ProgressReport":
        if not isinstance(data, dict):
            raise ProtocolError("progress payload is not a JSON object")
        flat = dict(data)
        nested = flat.get("data")
        if isinstance(nested, dict) and "video_url" in nested and "video_url" not in flat:
            flat["video_url"] = nested["video_url"]
        try:
            return cls.model_validate(flat)
        except ValidationError as exc:
            raise ProtocolError(f"invalid progress payload: {exc.error_count()} error(s)") from exc

    @property
    def is_complete(self) -> bool:
        return bool(self.video_url) or (self.status or "").lower() in COMPLETE_STATUSES

    @property
    def is_failed(self) -> bool:
        return bool(self.error) or (self.status or "").lower() in FAILED_STATUSES
