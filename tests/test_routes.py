"""
Tests for the REST and WebSocket routes.

The router is mounted on a bare FastAPI app with a coordinator built from
the scripted fakes; TestClient is used as a context manager so the
coordinator's timers and jobs share one event loop across requests.

Run with: python -m pytest tests/test_routes.py -v
"""

import base64
import sys
import time
from pathlib import Path

from fastapi import FastAPI
from fastapi.testclient import TestClient

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import FakeSpeech, ScriptedBackend, SleepRecorder, fast_settings, success_result
from src.agents.session import RelayAgentSessionFactory
from src.api import routes, websocket
from src.conversation import ConversationCoordinator
from src.services.events import EventEmitter
from src.services.logger import StoryWriterLogger
from src.services.story_generation import StoryGenerationService
from src.services.story_library import InMemoryKeyValueStore, StoryLibrary


def build_coordinator(speech=None) -> ConversationCoordinator:
    settings = fast_settings(silence_timeout_ms=5000)
    app_logger = StoryWriterLogger(settings=settings)
    service = StoryGenerationService(
        ScriptedBackend([success_result()]), settings=settings,
        sleep=SleepRecorder(), app_logger=app_logger
    )
    return ConversationCoordinator(
        service,
        settings=settings,
        session_factory=RelayAgentSessionFactory(),
        library=StoryLibrary(InMemoryKeyValueStore()),
        speech=speech,
        events=EventEmitter(),
        app_logger=app_logger,
    )


def build_app() -> FastAPI:
    app = FastAPI()
    app.include_router(routes.router)
    app.include_router(websocket.router)
    return app


def utterance(source: str, message: str) -> dict:
    return {"type": "transcript", "source": source, "message": message}


def wait_for_phase(client: TestClient, phase: str, timeout: float = 2.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        conversation = client.get("/api/conversation").json()
        if conversation["phase"] == phase or time.monotonic() > deadline:
            return conversation
        time.sleep(0.01)


class RouteTestBase:

    def setup_method(self):
        self.coordinator = build_coordinator(speech=FakeSpeech(audio=b"mp3-bytes"))
        routes.set_coordinator(self.coordinator)
        websocket.set_coordinator(self.coordinator)

    def teardown_method(self):
        routes.set_coordinator(None)
        websocket.set_coordinator(None)

    def converse(self, client: TestClient):
        assert client.post("/api/conversation/start").json()["started"]
        for source, message in [
            ("ai", "What should our story be about?"),
            ("user", "a dragon"),
            ("ai", "What is its name?"),
            ("user", "sparky"),
        ]:
            response = client.post("/api/conversation/messages", json=utterance(source, message))
            assert response.json()["accepted"]


class TestConversationRoutes(RouteTestBase):

    def test_health(self):
        with TestClient(build_app()) as client:
            data = client.get("/api/health").json()
        assert data["status"] == "healthy"
        assert data["coordinator_initialized"] is True

    def test_uninitialized(self):
        routes.set_coordinator(None)
        with TestClient(build_app()) as client:
            response = client.get("/api/conversation")
        assert response.status_code == 500

    def test_message_without_session(self):
        with TestClient(build_app()) as client:
            response = client.post("/api/conversation/messages", json=utterance("user", "hi"))
        assert response.status_code == 409

    def test_manual_end_to_story(self):
        with TestClient(build_app()) as client:
            self.converse(client)

            response = client.post("/api/conversation/end", json={})

            assert response.json()["ended"] is True
            conversation = wait_for_phase(client, "COMPLETE")

        assert conversation["phase"] == "COMPLETE"
        assert conversation["story"]["title"] == "The Brave Little Dragon"
        assert conversation["transcript"].startswith("Agent: What should our story be about?")

    def test_end_signal_message(self):
        with TestClient(build_app()) as client:
            self.converse(client)

            client.post("/api/conversation/messages", json={
                "type": "client_tool_call",
                "client_tool_call": {"tool_name": "end_call"},
            })
            conversation = wait_for_phase(client, "COMPLETE")

        assert conversation["phase"] == "COMPLETE"

    def test_end_with_client_transcript(self):
        with TestClient(build_app()) as client:
            client.post("/api/conversation/start")

            response = client.post("/api/conversation/end", json={"transcript": "User: A robot\n\nUser: Who sings"})

            assert response.json()["ended"] is True
            conversation = wait_for_phase(client, "COMPLETE")

        assert conversation["transcript"] == "User: A robot\n\nUser: Who sings"

    def test_manual_end_with_too_few_turns(self):
        with TestClient(build_app()) as client:
            client.post("/api/conversation/start")
            client.post("/api/conversation/messages", json=utterance("user", "a dragon"))

            data = client.post("/api/conversation/end", json={}).json()

        assert data["ended"] is False
        assert data["conversation"]["phase"] == "ACTIVE"

    def test_disconnect_without_turns(self):
        with TestClient(build_app()) as client:
            client.post("/api/conversation/start")

            data = client.post("/api/conversation/disconnect").json()

        assert data["conversation"]["phase"] == "IDLE"

    def test_reset(self):
        with TestClient(build_app()) as client:
            client.post("/api/conversation/start")

            data = client.post("/api/conversation/reset").json()

        assert data["conversation"]["phase"] == "IDLE"

    def test_retry_without_transcript(self):
        with TestClient(build_app()) as client:
            data = client.post("/api/conversation/retry").json()

        assert data["retrying"] is False
        assert "story_generation" in data["conversation"]["errors"]

    def test_audio(self):
        with TestClient(build_app()) as client:
            data = client.post("/api/conversation/audio", json={"text": "Once upon a time"}).json()

        assert base64.b64decode(data["audio"]) == b"mp3-bytes"


class TestStoryRoutes(RouteTestBase):

    def test_save_list_and_load(self):
        with TestClient(build_app()) as client:
            self.converse(client)
            client.post("/api/conversation/end", json={})
            wait_for_phase(client, "COMPLETE")

            saved = client.post("/api/stories", json={"title": "Sparky"}).json()["story"]
            stories = client.get("/api/stories").json()["stories"]
            client.post("/api/conversation/reset")
            loaded = client.post(f"/api/stories/{saved['id']}/load")

        assert [story["id"] for story in stories] == [saved["id"]]
        assert loaded.status_code == 200
        conversation = loaded.json()["conversation"]
        assert conversation["phase"] == "COMPLETE"
        assert conversation["story"]["title"] == "Sparky"

    def test_save_without_story(self):
        with TestClient(build_app()) as client:
            response = client.post("/api/stories", json={})

        assert response.status_code == 400
        assert response.json()["detail"]["type"] == "validation"

    def test_load_unknown_story(self):
        with TestClient(build_app()) as client:
            response = client.post("/api/stories/12345/load")
        assert response.status_code == 404

    def test_load_while_active(self):
        with TestClient(build_app()) as client:
            client.post("/api/conversation/start")
            response = client.post("/api/stories/12345/load")
        assert response.status_code == 409

    def test_models_without_listing_support(self):
        with TestClient(build_app()) as client:
            assert client.get("/api/stories/models").json() == {"models": []}


class TestWebSocket(RouteTestBase):

    def test_handshake_and_ping(self):
        with TestClient(build_app()) as client:
            with client.websocket_connect("/ws/conversation") as ws:
                hello = ws.receive_json()
                ws.send_json({"type": "ping"})
                pong = ws.receive_json()

        assert hello["type"] == "connection_established"
        assert hello["conversation"]["phase"] == "IDLE"
        assert pong == {"type": "pong"}

    def test_agent_message_needs_session(self):
        with TestClient(build_app()) as client:
            with client.websocket_connect("/ws/conversation") as ws:
                ws.receive_json()
                ws.send_json({"type": "agent_message", "message": utterance("user", "hi")})
                reply = ws.receive_json()

        assert reply == {"type": "error", "message": "No active agent session"}

    def test_agent_message_is_captured(self):
        with TestClient(build_app()) as client:
            client.post("/api/conversation/start")
            with client.websocket_connect("/ws/conversation") as ws:
                ws.receive_json()
                ws.send_json({"type": "agent_message", "message": utterance("user", "a dragon")})
                reply = ws.receive_json()

        assert reply == {"type": "agent_message_ack", "accepted": True}
        assert len(self.coordinator.capture.turns) == 1

    def test_unknown_type(self):
        with TestClient(build_app()) as client:
            with client.websocket_connect("/ws/conversation") as ws:
                ws.receive_json()
                ws.send_json({"type": "dance"})
                reply = ws.receive_json()

        assert reply["type"] == "error"
