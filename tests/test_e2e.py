"""End-to-end tests. They need a running gateway and backend, or are skipped."""

import json
import os

import pytest

E2E = os.environ.get("RUN_E2E", "").lower() in ("1", "true", "yes")
pytestmark = pytest.mark.skipif(not E2E, reason="E2E tests disabled (set RUN_E2E=1)")


@pytest.mark.asyncio
async def test_gateway_session_cycle():
    import httpx
    import websockets

    base = os.environ.get("GATEWAY_URL", "http://localhost:8000")
    ws_url = base.replace("http", "ws", 1) + "/events"

    async with websockets.connect(ws_url) as ws:
        first = json.loads(await ws.recv())
        assert first["kind"] == "state"

        async with httpx.AsyncClient(base_url=base, timeout=30) as client:
            resp = await client.post("/session/start")
            assert resp.status_code == 200
            assert resp.json()["status"] in ("recording", "error")

            resp = await client.post("/session/stop")
            assert resp.json()["status"] in ("idle", "error")


@pytest.mark.asyncio
async def test_chat_answers():
    import httpx

    base = os.environ.get("GATEWAY_URL", "http://localhost:8000")
    async with httpx.AsyncClient(base_url=base, timeout=120) as client:
        resp = await client.post("/chat", json={"question": "Summarize the meeting so far."})
        assert resp.status_code == 200
        assert resp.text
