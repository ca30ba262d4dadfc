"""
playback.py — Song Creator · Audio Playback Pipeline
====================================================
Plays one speech payload at a time through an output stream.

Each play() gets a token.  Natural completion posts PlaybackEnded(token); a
stream that stops before its buffer drained posts PlaybackFailed(token).  A
newer play() or stop() retires the token, so a superseded playback never
reports anything.
"""

from __future__ import annotations

import asyncio
import io
import logging
import threading
from functools import partial
from typing import Any, Callable, Optional

import numpy as np
import soundfile as sf
from scipy.signal import resample

from .config import AudioConfig
from .errors import PlaybackError
from .events import PlaybackEnded, PlaybackFailed

log = logging.getLogger("song_creator.playback")


def _default_output_stream(**kwargs: Any):
    try:
        import sounddevice as sd
    except (ImportError, OSError) as exc:
        raise PlaybackError("sounddevice is required for playback.") from exc
    return sd.OutputStream(**kwargs)


def decode_speech(payload: bytes, target_rate: Optional[int] = None) -> tuple[np.ndarray, int]:
    """Decode an encoded speech payload to mono float32 samples."""
    try:
        data, rate = sf.read(io.BytesIO(payload), dtype="float32")
    except (RuntimeError, ValueError, TypeError) as exc:
        raise PlaybackError(f"could not decode speech audio: {exc}") from exc
    if data.ndim == 2:
        data = data[:, 0]  # mono
    if target_rate and target_rate != rate and len(data):
        frames = max(1, int(round(len(data) * target_rate / float(rate))))
        data = resample(data, frames).astype(np.float32)
        rate = target_rate
    return data, rate


class AudioPlayback:
    """Exclusive speech output."""

    def __init__(
        self,
        config: Optional[AudioConfig] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.config = config or AudioConfig()
        self._stream_factory = stream_factory or _default_output_stream
        self._stream = None
        self._buf: Optional[np.ndarray] = None
        self._pos = 0
        self._lock = threading.Lock()
        self._token = 0
        self._active = False
        self._drained = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sink: Optional[Callable[[Any], None]] = None

    def attach(self, sink: Callable[[Any], None]) -> None:
        self._sink = sink

    @property
    def active(self) -> bool:
        return self._active

    @property
    def token(self) -> int:
        return self._token

    def play(self, payload: bytes) -> int:
        """Start playing *payload*, superseding anything in flight."""
        self.stop()
        self._token += 1
        token = self._token
        self._loop = asyncio.get_running_loop()

        samples, rate = decode_speech(payload, self.config.playback_sample_rate_hz)
        if not len(samples):
            raise PlaybackError("speech audio is empty")

        with self._lock:
            self._buf = samples
            self._pos = 0
            self._drained = False
        try:
            self._stream = self._stream_factory(
                samplerate=rate,
                channels=1,
                dtype="float32",
                blocksize=self.config.playback_blocksize,
                device=self.config.output_device,
                callback=partial(self._callback, token),
                finished_callback=partial(self._on_finished, token),
            )
            self._active = True
            self._stream.start()
        except PlaybackError:
            self._release()
            raise
        except Exception as exc:
            log.error("event=playback_start_failed error=%s", exc)
            self._release()
            raise PlaybackError(f"could not start audio output: {exc}") from exc

        log.info(
            "event=playback_started token=%d seconds=%.2f",
            token, len(samples) / float(rate),
        )
        return token

    def stop(self) -> None:
        """Silence output now.  The current token never reports."""
        if self._stream is None and not self._active:
            return
        self._token += 1
        self._release()
        log.info("event=playback_interrupted")

    # -- sounddevice audio-thread callbacks --

    def _callback(self, token: int, outdata: np.ndarray, frames: int, _time, status) -> None:
        if status:
            log.warning("event=playback_status status=%s", status)
        signal_drained = False
        with self._lock:
            if token != self._token or self._buf is None:
                outdata.fill(0)
                return
            remaining = len(self._buf) - self._pos
            take = min(frames, remaining)
            outdata[:take, 0] = self._buf[self._pos:self._pos + take]
            outdata[take:] = 0.0
            self._pos += take
            if self._pos >= len(self._buf) and not self._drained:
                self._drained = True
                signal_drained = True
        if signal_drained and self._loop is not None:
            self._loop.call_soon_threadsafe(self._finish, token)

    def _on_finished(self, token: int) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._stream_stopped, token)

    # -- loop-side completion --

    def _finish(self, token: int) -> None:
        if token != self._token or not self._active:
            return
        self._release()
        log.info("event=playback_finished token=%d", token)
        self._emit(PlaybackEnded(token))

    def _stream_stopped(self, token: int) -> None:
        if token != self._token or not self._active:
            return
        self._release()
        log.error("event=playback_failed token=%d", token)
        self._emit(PlaybackFailed(token, "audio output stopped unexpectedly"))

    def _emit(self, event) -> None:
        if self._sink is not None:
            self._sink(event)

    def _release(self) -> None:
        self._active = False
        with self._lock:
            self._buf = None
            self._pos = 0
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            log.warning("event=playback_release_error error=%s", exc)
