"""Control plane endpoints through FastAPI's TestClient."""

import logging
import time

import pytest
from fastapi.testclient import TestClient

from song_creator import __version__
from song_creator.server import Broadcaster, create_app


def poll_session(client, predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get("/session").json()
        if predicate(body):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"session never reached the expected state: {body}")
        time.sleep(0.01)


@pytest.fixture
def rest_app(make_session):
    return create_app(orchestrator=make_session(mode="rest"))


class TestEndpoints:
    def test_health_before_lifespan(self, rest_app):
        client = TestClient(rest_app)
        body = client.get("/health").json()
        assert body == {"status": "ok", "version": __version__, "mode": "rest"}
        assert client.get("/session").status_code == 503

    def test_health_and_config(self, rest_app):
        with TestClient(rest_app) as client:
            body = client.get("/health").json()
            assert body["phase"] == "not_started"
            assert body["connection"] == "disconnected"

            config = client.get("/config").json()
            assert config["backend"]["mode"] == "rest"
            assert config["interview"]["questions"] == ["Q1", "Q2", "Q3"]

    def test_interview_over_http(self, rest_app):
        with TestClient(rest_app) as client:
            body = client.post("/session/start").json()
            assert body["phase"] in ("connecting", "interview_active")

            body = poll_session(client, lambda s: s["phase"] == "interview_active")
            assert body["question_index"] == 0
            assert body["current_question"] == "Q1"

            body = client.put("/session/answer", json={"text": "a1"}).json()
            assert body["pending_answer"] == "a1"

            client.post("/session/answer/submit")
            body = poll_session(client, lambda s: s["question_index"] == 1)
            assert body["answers"] == ["a1"]
            assert body["current_question"] == "Q2"

            body = client.post("/session/reset").json()
            assert body["phase"] == "not_started"
            assert body["answers"] == []
            assert body["notification"] == {"severity": "info", "message": "Application reset"}

    def test_empty_submit_warns(self, rest_app):
        with TestClient(rest_app) as client:
            client.post("/session/start")
            poll_session(client, lambda s: s["phase"] == "interview_active")
            body = client.post("/session/answer/submit").json()
            assert body["notification"]["severity"] == "warning"
            assert body["answers"] == []

    def test_answer_body_validated(self, rest_app):
        with TestClient(rest_app) as client:
            assert client.put("/session/answer", json={}).status_code == 422


class TestWebSockets:
    def test_state_stream(self, rest_app):
        with TestClient(rest_app) as client:
            with client.websocket_connect("/ws/state") as ws:
                first = ws.receive_json()
                assert first["phase"] == "not_started"
                client.post("/session/start")
                update = ws.receive_json()
                assert update["phase"] in ("connecting", "interview_active")

    def test_log_stream_replays_history(self, rest_app, caplog):
        caplog.set_level(logging.INFO, logger="song_creator")
        with TestClient(rest_app) as client:
            client.post("/session/start")
            poll_session(client, lambda s: s["phase"] == "interview_active")
            with client.websocket_connect("/ws/logs") as ws:
                record = ws.receive_json()
                assert set(record) == {"level", "logger", "msg", "ts"}
                assert record["logger"].startswith("song_creator")


class TestBroadcaster:
    @pytest.mark.asyncio
    async def test_history_limit(self):
        hub = Broadcaster(history=2)
        for i in range(4):
            await hub.broadcast({"n": i})
        assert hub._history == [{"n": 2}, {"n": 3}]

    @pytest.mark.asyncio
    async def test_no_history(self):
        hub = Broadcaster(history=0)
        await hub.broadcast({"n": 1})
        assert hub._history == []
