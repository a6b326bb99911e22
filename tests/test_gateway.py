import pytest
from fastapi.testclient import TestClient

import gateway.main as gateway_main
from audio_service.capture import AudioCaptureManager
from audio_service.models import InputDevice
from chat_service.assistant import ChatAssistant
from common.config import ChatSettings, TranscribeSettings
from common.schemas import TranscriptionEvent
from gateway.controller import SessionController
from tests.fakes import FakeBackend, FakeSource


async def canned_reply(messages, settings):
    canned_reply.system = messages[0]["content"]
    for chunk in ("Two ", "speakers."):
        yield chunk


@pytest.fixture
def controller(monkeypatch):
    mic = FakeSource("microphone", devices=[
        InputDevice(id="1", name="Built-in Mic", channels=1, default_sample_rate=44100.0, is_default=True),
    ])
    controller = SessionController(
        TranscribeSettings(access_key="", secret_key="", region="us-east-1"),
        AudioCaptureManager(mic, FakeSource("system")),
        FakeBackend(),
    )
    monkeypatch.setattr(gateway_main, "controller", controller)
    monkeypatch.setattr(gateway_main, "assistant", ChatAssistant(ChatSettings(), transport=canned_reply))
    return controller


@pytest.fixture
def client(controller):
    with TestClient(gateway_main.app) as client:
        yield client


class TestGateway:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.json() == {"status": "ok", "session": "idle"}

    def test_devices(self, client):
        resp = client.get("/devices")
        assert resp.json()[0]["name"] == "Built-in Mic"

    def test_start_without_credentials_is_error(self, client):
        resp = client.post("/session/start")
        body = resp.json()
        assert body["status"] == "error"
        assert "credentials" in body["message"]
        assert client.get("/session").json()["status"] == "error"

    def test_transcript_and_rename(self, client, controller):
        controller.engine.apply(TranscriptionEvent(text="hello", is_partial=False, speaker_label="spk_0"))

        assert client.get("/transcript").json()["display_text"] == "[spk_0] hello"
        resp = client.put("/speakers/spk_0", json={"name": "Alice"})
        assert resp.json()["display_text"] == "[Alice] hello"
        assert client.put("/speakers/spk_7", json={"name": "Bob"}).status_code == 404

        resp = client.delete("/transcript")
        assert resp.json()["segments"] == []

    def test_chat_streams_answer(self, client, controller):
        controller.engine.apply(TranscriptionEvent(text="we ship friday", is_partial=False, speaker_label="spk_1"))
        resp = client.post("/chat", json={"question": "how many speakers?", "history": []})
        assert resp.text == "Two speakers."
        assert "[spk_1] we ship friday" in canned_reply.system

    def test_events_socket_sends_current_state(self, client):
        with client.websocket_connect("/events") as ws:
            event = ws.receive_json()
        assert event["kind"] == "state"
        assert event["state"]["status"] == "idle"
