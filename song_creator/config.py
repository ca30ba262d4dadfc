"""
config.py — Song Creator · Runtime Configuration
================================================
Pydantic models for every tunable parameter of the session.
Read from an optional JSON file, then overridden from the environment.  Used by:
  • server.py        — builds the config at startup, serves GET /config
  • orchestrator.py  — passes each section to the component it configures

Environment overrides (a ``.env`` file is honoured):
  SONG_CREATOR_CONFIG    path of a JSON config file
  SONG_CREATOR_MODE      "channel" | "rest"
  SONG_CREATOR_API_BASE  base URL for request/response calls
  SONG_CREATOR_WS_URL    channel URL (otherwise derived from the origin)
  SONG_CREATOR_ORIGIN    page origin the channel URL is derived from
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal, Optional
from urllib.parse import urlsplit, urlunsplit

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

log = logging.getLogger("song_creator.config")

# ---------------------------------------------------------------------------
# Default interview (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_QUESTIONS: list[str] = [
    "Which memory would you like to turn into a song?",
    "Who was with you, and how did that moment feel?",
    "What kind of music fits that memory: upbeat, calm, or something else?",
]


def derive_channel_url(origin: str, path: str = "/ws") -> str:
    """Map a page origin onto its channel URL: https → wss, http → ws."""
    parts = urlsplit(origin)
    scheme = {"https": "wss", "http": "ws", "wss": "wss", "ws": "ws"}.get(parts.scheme.lower())
    if scheme is None or not parts.netloc:
        raise ValueError(f"cannot derive a channel URL from origin {origin!r}")
    return urlunsplit((scheme, parts.netloc, path, "", ""))


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class BackendConfig(BaseModel):
    """Where the backend lives and how the session talks to it."""
    mode: Literal["channel", "rest"] = Field(default="channel", description="Duplex channel or request/response deployment")
    api_base: str = Field(default="http://localhost:8000", description="Base URL for REST calls and /transcribe")
    origin: str = Field(default="http://localhost:8000", description="Page origin the channel URL is derived from")
    channel_url: Optional[str] = Field(default=None, description="Explicit channel URL; overrides the origin mapping")
    question_route: Literal["body", "path"] = Field(default="body", description="POST /get-question {index} or POST /questions/{index}")
    request_timeout_sec: float = Field(default=30.0, gt=0.0, le=600.0, description="Per-request timeout (s)")
    open_timeout_sec: float = Field(default=10.0, gt=0.0, le=120.0, description="Channel handshake timeout (s)")

    def resolved_channel_url(self) -> str:
        return self.channel_url or derive_channel_url(self.origin)


class ReconnectConfig(BaseModel):
    """Exponential backoff for unexpected channel loss."""
    base_ms: int = Field(default=1000, ge=1, le=60_000, description="Delay before the first retry (ms)")
    cap_ms: int = Field(default=10_000, ge=1, le=600_000, description="Upper bound for any retry delay (ms)")
    max_attempts: int = Field(default=5, ge=1, le=100, description="Disconnects tolerated before giving up")


class GenerationConfig(BaseModel):
    """Generation job tracking."""
    progress_source: Optional[Literal["push", "poll"]] = Field(
        default=None,
        description="push (channel messages) or poll; unset = push in channel mode, poll in rest mode",
    )
    poll_interval_ms: int = Field(default=3000, ge=10, le=60_000, description="Progress poll period (ms)")
    open_artifact: bool = Field(default=False, description="Open the finished video URL in the default browser")


class AudioConfig(BaseModel):
    """Microphone capture and speech playback."""
    sample_rate_hz: int = Field(default=16000, ge=8000, le=96000, description="Capture sample rate")
    channels: int = Field(default=1, ge=1, le=2, description="Capture channels")
    blocksize: int = Field(default=1280, ge=64, le=16384, description="Frames per capture callback")
    input_device: Optional[str] = Field(default=None, description="Input device name or index")
    noise_suppression: bool = Field(default=True, description="Silence chunks below noise_gate_rms")
    echo_cancellation: bool = Field(default=True, description="Silence chunks while speech is playing")
    auto_gain_control: bool = Field(default=True, description="Normalise the take's peak level")
    noise_gate_rms: float = Field(default=500.0, ge=0.0, le=32767.0, description="int16 RMS below which a chunk is noise")
    barge_in_rms: float = Field(default=3000.0, ge=0.0, le=32767.0, description="int16 RMS that passes the echo gate")
    agc_target_peak: float = Field(default=0.9, gt=0.0, le=1.0, description="Peak level after auto-gain (full scale = 1.0)")
    agc_max_gain: float = Field(default=8.0, ge=1.0, le=64.0, description="Largest gain auto-gain may apply")
    output_device: Optional[str] = Field(default=None, description="Output device name or index")
    playback_sample_rate_hz: Optional[int] = Field(default=None, ge=8000, le=96000, description="Resample speech to this rate")
    playback_blocksize: int = Field(default=1024, ge=64, le=16384, description="Frames per playback callback")


class InterviewConfig(BaseModel):
    """The question list.  Empty = the backend decides when the interview ends."""
    questions: list[str] = Field(default_factory=lambda: list(DEFAULT_QUESTIONS))


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class SongCreatorConfig(BaseModel):
    """Complete runtime configuration for one session."""
    backend: BackendConfig = Field(default_factory=BackendConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    interview: InterviewConfig = Field(default_factory=InterviewConfig)

    @model_validator(mode="after")
    def _check_rest_questions(self) -> "SongCreatorConfig":
        if self.backend.mode == "rest" and not self.interview.questions:
            raise ValueError("rest mode needs a non-empty interview.questions list")
        return self

    @property
    def question_count(self) -> Optional[int]:
        return len(self.interview.questions) or None

    @property
    def progress_source(self) -> str:
        if self.generation.progress_source:
            return self.generation.progress_source
        return "push" if self.backend.mode == "channel" else "poll"

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "SongCreatorConfig":
        """Read a JSON config file; a missing or unusable file yields the defaults."""
        source = Path(path)
        try:
            raw = source.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.info("event=config_file_missing path=%s", source)
            return cls()
        except OSError as exc:
            log.warning("event=config_file_unreadable path=%s error=%s", source, exc)
            return cls()
        try:
            config = cls.model_validate_json(raw)
        except ValidationError as exc:
            log.warning("event=config_invalid path=%s errors=%d", source, exc.error_count())
            return cls()
        log.info("event=config_loaded path=%s", source)
        return config

    def merge_patch(self, patch: dict) -> "SongCreatorConfig":
        """Copy of this config with the nested sections of *patch* laid over it."""
        merged = self.model_dump()
        _overlay(merged, patch)
        return type(self).model_validate(merged)

    @classmethod
    def from_env(cls) -> "SongCreatorConfig":
        """Build the config from SONG_CREATOR_CONFIG plus individual overrides."""
        load_dotenv()
        path = os.getenv("SONG_CREATOR_CONFIG")
        config = cls.load(path) if path else cls()

        patch: dict = {}
        backend: dict = {}
        if os.getenv("SONG_CREATOR_MODE"):
            backend["mode"] = os.getenv("SONG_CREATOR_MODE", "").strip().lower()
        if os.getenv("SONG_CREATOR_API_BASE"):
            backend["api_base"] = os.getenv("SONG_CREATOR_API_BASE")
        if os.getenv("SONG_CREATOR_WS_URL"):
            backend["channel_url"] = os.getenv("SONG_CREATOR_WS_URL")
        if os.getenv("SONG_CREATOR_ORIGIN"):
            backend["origin"] = os.getenv("SONG_CREATOR_ORIGIN")
        if backend:
            patch["backend"] = backend
            log.info("event=config_env_overrides keys=%s", ",".join(sorted(backend)))
        return config.merge_patch(patch) if patch else config


def _overlay(target: dict, patch: dict) -> None:
    for key, value in patch.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _overlay(current, value)
        else:
            target[key] = value
