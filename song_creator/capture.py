"""
capture.py — Song Creator · Audio Capture Pipeline
==================================================
One take = microphone open → chunks buffered in arrival order → stop →
one WAV payload for /transcribe.

Signal conditioning runs on each chunk in the audio callback:
  noise gate  — chunks below ``noise_gate_rms`` become silence
  echo gate   — while speech is playing, chunks become silence unless they
                reach ``barge_in_rms`` (the user talking over the guide)
and on the assembled take:
  auto-gain   — peak scaled to ``agc_target_peak``, gain ≤ ``agc_max_gain``

The input stream is released exactly once, whichever way the take ends.
"""

from __future__ import annotations

import io
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np
import soundfile as sf

from .config import AudioConfig
from .errors import CaptureError

log = logging.getLogger("song_creator.capture")

INT16_FULL_SCALE = 32768.0


def _default_input_stream(**kwargs: Any):
    try:
        import sounddevice as sd
    except (ImportError, OSError) as exc:
        raise CaptureError("sounddevice is required for recording.") from exc
    return sd.InputStream(**kwargs)


def chunk_rms(chunk: np.ndarray) -> float:
    if chunk.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(chunk.astype(np.float32) ** 2)))


def apply_auto_gain(samples: np.ndarray, target_peak: float, max_gain: float) -> np.ndarray:
    """Scale int16 *samples* so the peak sits at *target_peak* of full scale."""
    peak = float(np.max(np.abs(samples.astype(np.float32)))) / INT16_FULL_SCALE if samples.size else 0.0
    if peak <= 0.0:
        return samples
    gain = min(target_peak / peak, max_gain)
    scaled = samples.astype(np.float32) * gain
    return np.clip(scaled, -INT16_FULL_SCALE, INT16_FULL_SCALE - 1).astype(np.int16)


@dataclass(frozen=True)
class CapturedAudio:
    payload: bytes
    sample_rate: int
    channels: int
    duration_seconds: float
    filename: str = "audio.wav"
    mime: str = "audio/wav"

    @property
    def empty(self) -> bool:
        return not self.payload


class AudioCapture:
    """Microphone take recorder.  Owns at most one input stream."""

    def __init__(
        self,
        config: Optional[AudioConfig] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
        is_playing: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.config = config or AudioConfig()
        self._stream_factory = stream_factory or _default_input_stream
        self._is_playing = is_playing or (lambda: False)
        self._stream = None
        self._chunks: list[np.ndarray] = []
        self._lock = threading.Lock()
        self.release_count = 0

    @property
    def active(self) -> bool:
        return self._stream is not None

    def start(self) -> None:
        if self._stream is not None:
            raise CaptureError("a take is already in progress")
        with self._lock:
            self._chunks = []
        cfg = self.config
        try:
            stream = self._stream_factory(
                samplerate=cfg.sample_rate_hz,
                channels=cfg.channels,
                dtype="int16",
                blocksize=cfg.blocksize,
                device=cfg.input_device,
                callback=self._callback,
            )
        except CaptureError:
            raise
        except Exception as exc:
            log.error("event=capture_open_failed error=%s", exc)
            raise CaptureError(f"could not open the microphone: {exc}") from exc

        self._stream = stream
        try:
            stream.start()
        except Exception as exc:
            log.error("event=capture_start_failed error=%s", exc)
            self._release()
            raise CaptureError(f"could not start the microphone: {exc}") from exc
        log.info(
            "event=capture_started rate=%d channels=%d",
            cfg.sample_rate_hz, cfg.channels,
        )

    # -- sounddevice audio-thread callback --

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            log.warning("event=capture_status status=%s", status)
        chunk = self._condition(indata.copy())
        with self._lock:
            self._chunks.append(chunk)

    def _condition(self, chunk: np.ndarray) -> np.ndarray:
        cfg = self.config
        if not (cfg.echo_cancellation or cfg.noise_suppression):
            return chunk
        rms = chunk_rms(chunk)
        if cfg.echo_cancellation and self._is_playing():
            if rms >= cfg.barge_in_rms:
                log.debug("event=echo_gate_bypass rms=%.0f", rms)
                return chunk
            return np.zeros_like(chunk)
        if cfg.noise_suppression and rms < cfg.noise_gate_rms:
            return np.zeros_like(chunk)
        return chunk

    # -- finishing a take --

    def stop(self) -> CapturedAudio:
        """Finish the take and return it as WAV.  Empty when nothing was heard."""
        if self._stream is None:
            raise CaptureError("no take in progress")
        try:
            with self._lock:
                chunks, self._chunks = self._chunks, []
        finally:
            self._release()
        return self._assemble(chunks)

    def abort(self) -> None:
        """Drop the take without building a payload."""
        with self._lock:
            self._chunks = []
        if self._stream is not None:
            log.info("event=capture_aborted")
            self._release()

    def _assemble(self, chunks: list[np.ndarray]) -> CapturedAudio:
        cfg = self.config
        if not chunks:
            return CapturedAudio(b"", cfg.sample_rate_hz, cfg.channels, 0.0)

        samples = np.concatenate(chunks, axis=0)
        duration = len(samples) / float(cfg.sample_rate_hz)
        if not np.any(samples):
            log.info("event=capture_silent duration=%.2fs", duration)
            return CapturedAudio(b"", cfg.sample_rate_hz, cfg.channels, duration)

        if cfg.auto_gain_control:
            samples = apply_auto_gain(samples, cfg.agc_target_peak, cfg.agc_max_gain)

        buf = io.BytesIO()
        try:
            sf.write(buf, samples, cfg.sample_rate_hz, format="WAV", subtype="PCM_16")
        except (RuntimeError, ValueError, TypeError) as exc:
            raise CaptureError(f"could not encode the recording: {exc}") from exc

        payload = buf.getvalue()
        log.info("event=capture_stopped duration=%.2fs bytes=%d", duration, len(payload))
        return CapturedAudio(payload, cfg.sample_rate_hz, cfg.channels, duration)

    def _release(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        self.release_count += 1
        try:
            stream.stop()
        except Exception as exc:
            log.warning("event=capture_stop_error error=%s", exc)
        try:
            stream.close()
        except Exception as exc:
            log.warning("event=capture_close_error error=%s", exc)
