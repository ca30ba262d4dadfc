"""Everything that can change the session arrives at the orchestrator as one of
these events.  Producers (transport, timers, audio callbacks, background
requests, user intents) never touch session state themselves.

Asynchronous completions carry the session ``epoch`` they were started in and,
where several operations of one kind can overlap, an operation token.  The
orchestrator drops any completion whose tags no longer match.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .models import Question
from .protocol import ProgressReport


# ---------------------------------------------------------------------------
# User intents
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StartInterview:
    pass


@dataclass(frozen=True)
class StartRecording:
    pass


@dataclass(frozen=True)
class StopRecording:
    pass


@dataclass(frozen=True)
class EditAnswer:
    text: str


@dataclass(frozen=True)
class SubmitAnswer:
    pass


@dataclass(frozen=True)
class ResetSession:
    pass


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChannelOpened:
    conn_id: int


@dataclass(frozen=True)
class ChannelMessage:
    conn_id: int
    raw: Union[str, bytes]


@dataclass(frozen=True)
class ChannelClosed:
    conn_id: int
    deliberate: bool
    opened: bool = True          # False when the connection never came up
    code: Optional[int] = None
    reason: str = ""
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReconnectDue:
    epoch: int


# ---------------------------------------------------------------------------
# Capture / transcription
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TranscriptionFinished:
    epoch: int
    op: int
    text: str


@dataclass(frozen=True)
class TranscriptionFailed:
    epoch: int
    op: int
    error: str


# ---------------------------------------------------------------------------
# Playback
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlaybackEnded:
    token: int


@dataclass(frozen=True)
class PlaybackFailed:
    token: int
    error: str


# ---------------------------------------------------------------------------
# Request/response completions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InterviewStarted:
    epoch: int
    question: Question


@dataclass(frozen=True)
class InterviewStartFailed:
    epoch: int
    error: str


@dataclass(frozen=True)
class QuestionLoaded:
    epoch: int
    question: Question


@dataclass(frozen=True)
class QuestionLoadFailed:
    epoch: int
    index: int
    error: str


@dataclass(frozen=True)
class AnswerAccepted:
    epoch: int
    index: int
    text: str


@dataclass(frozen=True)
class AnswerRejected:
    epoch: int
    index: int
    error: str


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GenerationAccepted:
    epoch: int
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationRequestFailed:
    epoch: int
    error: str


@dataclass(frozen=True)
class ProgressPolled:
    epoch: int
    report: ProgressReport


Event = Union[
    StartInterview, StartRecording, StopRecording, EditAnswer, SubmitAnswer, ResetSession,
    ChannelOpened, ChannelMessage, ChannelClosed,
    ReconnectDue,
    TranscriptionFinished, TranscriptionFailed,
    PlaybackEnded, PlaybackFailed,
    InterviewStarted, InterviewStartFailed, QuestionLoaded, QuestionLoadFailed,
    AnswerAccepted, AnswerRejected,
    GenerationAccepted, GenerationRequestFailed, ProgressPolled,
]
