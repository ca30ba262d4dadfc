"""Error taxonomy shared by every component of the session."""

from __future__ import annotations


class SongCreatorError(Exception):
    """Base class for every error the session turns into a notification."""


class ConnectivityError(SongCreatorError):
    """The channel failed to open or the backend could not be reached."""


class CaptureError(SongCreatorError):
    """Microphone unavailable, permission denied, or the take could not be assembled."""


class TranscriptionError(SongCreatorError):
    """Upload or decoding of the transcription request failed."""


class PlaybackError(SongCreatorError):
    """Speech payload could not be decoded or played."""


class SubmissionError(SongCreatorError):
    """Answer could not be sent (channel not open, backend refused it)."""


class GenerationError(SongCreatorError):
    """Backend reported a generation failure, or a generation call failed."""


class ProtocolError(SongCreatorError):
    """Inbound message is not valid JSON or does not match its declared type."""


class InvalidTransition(SongCreatorError):
    """A phase change that the transition table does not allow."""

    def __init__(self, current, target) -> None:
        super().__init__(f"illegal phase transition {current.value} -> {target.value}")
        self.current = current
        self.target = target
