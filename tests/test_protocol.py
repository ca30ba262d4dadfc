"""Decoding of channel messages and REST payloads."""

import base64
import json

import pytest

from song_creator.errors import ProtocolError
from song_creator.protocol import (
    GenerationProgressMessage,
    MusicCompleteMessage,
    MusicErrorMessage,
    ProgressReport,
    QuestionPayload,
    SpeechMessage,
    StatusUpdateMessage,
    parse_message,
)


def _raw(payload):
    return json.dumps(payload)


class TestParseMessage:
    def test_speech(self):
        audio = base64.b64encode(b"ID3-fake-mp3").decode()
        msg = parse_message(_raw({"type": "speech", "text": "Q1", "audio": audio}))
        assert isinstance(msg, SpeechMessage)
        assert msg.text == "Q1"
        assert msg.audio_bytes() == b"ID3-fake-mp3"

    def test_speech_without_audio(self):
        msg = parse_message(_raw({"type": "speech", "text": "Q1"}))
        assert msg.audio_bytes() is None

    def test_bad_base64(self):
        msg = parse_message(_raw({"type": "speech", "text": "Q1", "audio": "***"}))
        with pytest.raises(ProtocolError):
            msg.audio_bytes()

    def test_status_update(self):
        msg = parse_message(_raw({"type": "status_update", "status": "generating_music"}))
        assert isinstance(msg, StatusUpdateMessage)
        assert msg.status == "generating_music"

    @pytest.mark.parametrize("value, expected", [(45, 45), ("45%", 45), ("12.7", 12)])
    def test_progress_coercion(self, value, expected):
        msg = parse_message(_raw({"type": "generation_progress", "progress": value}))
        assert isinstance(msg, GenerationProgressMessage)
        assert msg.progress == expected

    def test_music_complete(self):
        msg = parse_message(_raw({"type": "music_complete", "data": {"video_url": "https://x/y", "title": "t"}}))
        assert isinstance(msg, MusicCompleteMessage)
        assert msg.data.video_url == "https://x/y"

    def test_music_error_detail(self):
        msg = parse_message(_raw({"type": "music_error", "data": {"code": 7}}))
        assert isinstance(msg, MusicErrorMessage)
        assert json.loads(msg.data) == {"code": 7}
        assert parse_message(_raw({"type": "music_error", "data": None})).data == "unknown error"

    def test_unknown_type_ignored(self):
        assert parse_message(_raw({"type": "heartbeat"})) is None

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '"text"'])
    def test_malformed(self, raw):
        with pytest.raises(ProtocolError):
            parse_message(raw)

    def test_schema_mismatch(self):
        with pytest.raises(ProtocolError):
            parse_message(_raw({"type": "status_update"}))
        with pytest.raises(ProtocolError):
            parse_message(_raw({"type": "generation_progress", "progress": "lots"}))


class TestRestPayloads:
    def test_question_alias(self):
        assert QuestionPayload.model_validate({"question": "Q2"}).text == "Q2"
        assert QuestionPayload.model_validate({"text": "Q3"}).text == "Q3"

    def test_progress_complete_with_nested_url(self):
        report = ProgressReport.from_payload({"status": "completed", "data": {"video_url": "https://x/y"}})
        assert report.is_complete
        assert report.video_url == "https://x/y"

    def test_progress_failed(self):
        report = ProgressReport.from_payload({"status": "failed", "error": "model crashed"})
        assert report.is_failed
        assert not ProgressReport.from_payload({"progress": "30"}).is_failed

    def test_progress_not_an_object(self):
        with pytest.raises(ProtocolError):
            ProgressReport.from_payload(["nope"])
