"""Shared fakes: no microphone, speaker, backend or network needed."""

import base64
import io
import json

import numpy as np
import pytest
import soundfile as sf

from song_creator.capture import AudioCapture
from song_creator.config import SongCreatorConfig
from song_creator.errors import (
    ConnectivityError,
    GenerationError,
    SubmissionError,
    TranscriptionError,
)
from song_creator.events import ChannelClosed, ChannelMessage, ChannelOpened
from song_creator.generation import GenerationTracker
from song_creator.models import ConnectionState, Question
from song_creator.orchestrator import SessionOrchestrator
from song_creator.playback import AudioPlayback
from song_creator.protocol import ProgressReport
from song_creator.reconnect import ReconnectPolicy


def wav_bytes(seconds: float = 0.05, rate: int = 16000) -> bytes:
    t = np.arange(int(seconds * rate)) / rate
    samples = (0.3 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)
    buf = io.BytesIO()
    sf.write(buf, samples, rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def speech(text: str, audio: bytes = None) -> dict:
    payload = {"type": "speech", "text": text}
    if audio is not None:
        payload["audio"] = base64.b64encode(audio).decode("ascii")
    return payload


# ---------------------------------------------------------------------------
# Audio devices
# ---------------------------------------------------------------------------

class FakeInputStream:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.callback = kwargs["callback"]
        self.started = False
        self.stop_calls = 0
        self.close_calls = 0
        self.fail_start = False

    def start(self):
        if self.fail_start:
            raise OSError("device busy")
        self.started = True

    def stop(self):
        self.stop_calls += 1

    def close(self):
        self.close_calls += 1

    def feed(self, value: int, frames: int = 1280):
        chunk = np.full((frames, 1), value, dtype=np.int16)
        self.callback(chunk, frames, None, None)


class FakeOutputStream:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.callback = kwargs["callback"]
        self.finished_callback = kwargs.get("finished_callback")
        self.started = False
        self.stop_calls = 0
        self.close_calls = 0
        self.fail_start = False

    def start(self):
        if self.fail_start:
            raise OSError("no output device")
        self.started = True

    def stop(self):
        self.stop_calls += 1
        if self.finished_callback is not None:
            self.finished_callback()

    def close(self):
        self.close_calls += 1

    def pump(self, frames: int = 4096) -> np.ndarray:
        out = np.ones((frames, 1), dtype=np.float32)
        self.callback(out, frames, None, None)
        return out


class StreamFactory:
    """Records every stream it opens."""

    def __init__(self, cls):
        self.cls = cls
        self.streams = []
        self.error = None

    def __call__(self, **kwargs):
        if self.error is not None:
            raise self.error
        stream = self.cls(**kwargs)
        self.streams.append(stream)
        return stream

    @property
    def last(self):
        return self.streams[-1]


@pytest.fixture
def input_factory():
    return StreamFactory(FakeInputStream)


@pytest.fixture
def output_factory():
    return StreamFactory(FakeOutputStream)


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

class FakeTransport:
    def __init__(self):
        self.state = ConnectionState.DISCONNECTED
        self.connection_id = 0
        self.sent = []
        self.open_calls = 0
        self.close_calls = 0
        self.fail_open = False
        self.fail_send = False
        self.send_gate = None
        self._sink = None

    def attach(self, sink):
        self._sink = sink

    @property
    def connected(self):
        return self.state is ConnectionState.CONNECTED

    async def open(self):
        self.open_calls += 1
        self.connection_id += 1
        if self.fail_open:
            self.state = ConnectionState.DISCONNECTED
            self._sink(ChannelClosed(self.connection_id, deliberate=False, opened=False, error="refused"))
            return
        self.state = ConnectionState.CONNECTED
        self._sink(ChannelOpened(self.connection_id))

    def close(self):
        self.close_calls += 1
        if self.state is ConnectionState.DISCONNECTED:
            return
        self.state = ConnectionState.DISCONNECTED
        self._sink(ChannelClosed(self.connection_id, deliberate=True, code=1000))

    async def wait_closed(self):
        return None

    async def send(self, text):
        if not self.connected:
            raise SubmissionError("channel is not open")
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.fail_send:
            raise SubmissionError("connection reset")
        self.sent.append(text)

    # -- test helpers --

    def push(self, payload):
        raw = payload if isinstance(payload, str) else json.dumps(payload)
        self._sink(ChannelMessage(self.connection_id, raw))

    def drop(self):
        self.state = ConnectionState.DISCONNECTED
        self._sink(ChannelClosed(self.connection_id, deliberate=False, code=1006))


class FakeBackend:
    def __init__(self, questions=("Q1", "Q2", "Q3")):
        self.state = ConnectionState.DISCONNECTED
        self.questions = list(questions)
        self.submitted = []
        self.generate_calls = []
        self.uploads = []
        self.transcription = "my answer"
        self.transcribe_error = None
        self.transcribe_gate = None
        self.submit_error = None
        self.start_error = None
        self.generate_error = None
        self.question_errors = {}
        self.progress = []
        self.closed = False

    async def start_interview(self):
        if self.start_error:
            raise ConnectivityError(self.start_error)
        self.state = ConnectionState.CONNECTED
        return {"status": "started"}

    async def get_question(self, index):
        if index in self.question_errors:
            raise ConnectivityError(self.question_errors.pop(index))
        return Question(index=index, text=self.questions[index])

    async def submit_answer(self, answer, question_index):
        if self.submit_error:
            raise SubmissionError(self.submit_error)
        self.submitted.append((question_index, answer))
        return {"status": "ok"}

    async def generate_music(self, answers):
        if self.generate_error:
            raise GenerationError(self.generate_error)
        self.generate_calls.append(list(answers))
        return {"status": "started"}

    async def generation_progress(self):
        if self.progress:
            return self.progress.pop(0)
        return ProgressReport(status="generating")

    async def transcribe(self, payload, filename="audio.wav", mime="audio/wav"):
        self.uploads.append(payload)
        if self.transcribe_gate is not None:
            await self.transcribe_gate.wait()
        if self.transcribe_error:
            raise TranscriptionError(self.transcribe_error)
        return self.transcription

    async def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

@pytest.fixture
def make_session(input_factory, output_factory):
    """Build an orchestrator wired to fakes.  Not started; use ``async with``."""

    def _make(mode="channel", questions=("Q1", "Q2", "Q3"), patch=None):
        config = SongCreatorConfig.model_validate({
            "backend": {"mode": mode},
            "interview": {"questions": list(questions)},
            "generation": {"poll_interval_ms": 10},
        })
        if patch:
            config = config.merge_patch(patch)
        backend = FakeBackend(questions or ("Q1", "Q2", "Q3"))
        transport = FakeTransport() if mode == "channel" else None
        playback = AudioPlayback(config.audio, stream_factory=output_factory)
        capture = AudioCapture(config.audio, stream_factory=input_factory, is_playing=lambda: playback.active)
        orch = SessionOrchestrator(
            config,
            transport=transport,
            backend=backend,
            capture=capture,
            playback=playback,
            tracker=GenerationTracker.from_config(config.generation),
            reconnect=ReconnectPolicy.from_config(config.reconnect),
        )
        return orch

    return _make
