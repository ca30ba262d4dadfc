"""
models.py — Song Creator · Session Data Model
=============================================
Enumerations, the phase transition table, and the immutable snapshot handed to
the presentation layer after every transition.

The snapshot is the only view of the session that leaves the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidTransition


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    NOT_STARTED = "not_started"
    CONNECTING = "connecting"
    INTERVIEW_ACTIVE = "interview_active"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    ANSWER_SUBMITTED = "answer_submitted"
    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class RecordingState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"


class GenerationStatus(str, Enum):
    NOT_STARTED = "not_started"
    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Phase transition table
# ---------------------------------------------------------------------------
# Reset is not listed: it is accepted from every phase and always lands on
# NOT_STARTED.

TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.NOT_STARTED: frozenset({Phase.CONNECTING}),
    Phase.CONNECTING: frozenset({Phase.INTERVIEW_ACTIVE, Phase.NOT_STARTED}),
    Phase.INTERVIEW_ACTIVE: frozenset({
        Phase.RECORDING,
        Phase.ANSWER_SUBMITTED,
        Phase.GENERATING,
    }),
    Phase.RECORDING: frozenset({
        Phase.TRANSCRIBING,
        Phase.INTERVIEW_ACTIVE,
        Phase.GENERATING,
    }),
    Phase.TRANSCRIBING: frozenset({Phase.INTERVIEW_ACTIVE, Phase.GENERATING}),
    Phase.ANSWER_SUBMITTED: frozenset({
        Phase.INTERVIEW_ACTIVE,
        Phase.GENERATING,
    }),
    Phase.GENERATING: frozenset({Phase.COMPLETE, Phase.FAILED}),
    Phase.COMPLETE: frozenset(),
    Phase.FAILED: frozenset(),
}


def check_transition(current: Phase, target: Phase) -> None:
    """Raise InvalidTransition unless *current* → *target* is in the table."""
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(current, target)


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Question:
    index: int
    text: str
    audio: Optional[bytes] = None


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    severity: Severity
    message: str


class GenerationSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: GenerationStatus = GenerationStatus.NOT_STARTED
    progress: int = Field(default=0, ge=0, le=100)
    video_url: Optional[str] = None
    error: Optional[str] = None
    backend_status: Optional[str] = None


class SessionSnapshot(BaseModel):
    """Read-only view consumed by the presentation layer."""
    model_config = ConfigDict(frozen=True)

    phase: Phase = Phase.NOT_STARTED
    question_index: int = -1
    current_question: str = ""
    answers: tuple[str, ...] = ()
    pending_answer: str = ""
    connection: ConnectionState = ConnectionState.DISCONNECTED
    recording: RecordingState = RecordingState.IDLE
    speaking: bool = False
    emotion: str = "neutral"
    generation: GenerationSnapshot = Field(default_factory=GenerationSnapshot)
    notification: Optional[Notification] = None
    last_error: Optional[str] = None
    reconnect_attempts: int = 0
