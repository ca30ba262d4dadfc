"""Microphone takes: gating, WAV assembly and exactly-once release."""

import io

import numpy as np
import pytest
import soundfile as sf

from song_creator.capture import AudioCapture, apply_auto_gain, chunk_rms
from song_creator.config import AudioConfig
from song_creator.errors import CaptureError


def make_capture(factory, playing=False, **audio):
    return AudioCapture(AudioConfig(**audio), stream_factory=factory, is_playing=lambda: playing)


class TestTake:
    def test_opens_16k_mono_int16(self, input_factory):
        capture = make_capture(input_factory)
        capture.start()
        kwargs = input_factory.last.kwargs
        assert kwargs["samplerate"] == 16000
        assert kwargs["channels"] == 1
        assert kwargs["dtype"] == "int16"
        assert capture.active
        capture.abort()

    def test_stop_returns_wav_and_releases_once(self, input_factory):
        capture = make_capture(input_factory)
        capture.start()
        stream = input_factory.last
        stream.feed(4000)
        stream.feed(-4000)

        take = capture.stop()

        assert not take.empty
        assert take.filename == "audio.wav"
        data, rate = sf.read(io.BytesIO(take.payload), dtype="int16")
        assert rate == 16000
        assert len(data) == 2 * 1280
        assert take.duration_seconds == pytest.approx(0.16)
        assert stream.stop_calls == 1
        assert stream.close_calls == 1
        assert capture.release_count == 1
        assert not capture.active

        capture.abort()
        assert capture.release_count == 1

    def test_no_chunks_is_empty(self, input_factory):
        capture = make_capture(input_factory)
        capture.start()
        assert capture.stop().empty

    def test_stop_without_start(self, input_factory):
        with pytest.raises(CaptureError):
            make_capture(input_factory).stop()

    def test_second_start_rejected(self, input_factory):
        capture = make_capture(input_factory)
        capture.start()
        with pytest.raises(CaptureError):
            capture.start()
        capture.abort()
        assert len(input_factory.streams) == 1

    def test_abort_releases(self, input_factory):
        capture = make_capture(input_factory)
        capture.start()
        input_factory.last.feed(4000)
        capture.abort()
        assert capture.release_count == 1
        with pytest.raises(CaptureError):
            capture.stop()


class TestDeviceErrors:
    def test_open_failure(self, input_factory):
        input_factory.error = OSError("permission denied")
        capture = make_capture(input_factory)
        with pytest.raises(CaptureError):
            capture.start()
        assert not capture.active

    def test_start_failure_releases(self, input_factory):
        original = input_factory.cls

        def failing(**kwargs):
            stream = original(**kwargs)
            stream.fail_start = True
            return stream

        input_factory.cls = failing
        capture = make_capture(input_factory)
        with pytest.raises(CaptureError):
            capture.start()
        assert capture.release_count == 1
        assert input_factory.last.close_calls == 1
        assert not capture.active


class TestConditioning:
    def test_noise_gate(self, input_factory):
        capture = make_capture(input_factory, auto_gain_control=False)
        capture.start()
        input_factory.last.feed(100)
        assert capture.stop().empty

    def test_noise_gate_disabled(self, input_factory):
        capture = make_capture(input_factory, noise_suppression=False, auto_gain_control=False)
        capture.start()
        input_factory.last.feed(100)
        assert not capture.stop().empty

    def test_echo_gate_silences_speaker_bleed(self, input_factory):
        capture = make_capture(input_factory, playing=True)
        capture.start()
        input_factory.last.feed(2000)
        assert capture.stop().empty

    def test_echo_gate_lets_loud_voice_through(self, input_factory):
        capture = make_capture(input_factory, playing=True)
        capture.start()
        input_factory.last.feed(5000)
        assert not capture.stop().empty

    def test_rms(self):
        assert chunk_rms(np.full(10, 300, dtype=np.int16)) == pytest.approx(300.0)
        assert chunk_rms(np.zeros(0, dtype=np.int16)) == 0.0


class TestAutoGain:
    def test_bounded_by_max_gain(self):
        out = apply_auto_gain(np.array([1000, -2000], dtype=np.int16), target_peak=0.5, max_gain=8.0)
        assert out.tolist() == [8000, -16000]

    def test_reaches_target_peak(self):
        out = apply_auto_gain(np.array([1000, -2000], dtype=np.int16), target_peak=0.5, max_gain=100.0)
        assert abs(int(np.max(np.abs(out.astype(np.int32)))) - 16384) <= 1

    def test_silence_untouched(self):
        silence = np.zeros(4, dtype=np.int16)
        assert apply_auto_gain(silence, 0.9, 8.0) is silence
