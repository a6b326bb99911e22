from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from audio_service.capture import AudioCaptureManager
from audio_service.sources import MicrophoneSource, SystemAudioSource
from chat_service.assistant import ChatAssistant
from common.config import ChatSettings, GatewaySettings, TranscribeSettings
from common.errors import MeetingHelperError
from common.schemas import ChatRequest, RenameSpeakerRequest, SessionEvent, SessionEventKind
from gateway.controller import SessionController
from transcribe_service.backend import WebSocketTranscriptionBackend

logger = logging.getLogger(__name__)

settings = GatewaySettings()
transcribe_settings = TranscribeSettings()
app = FastAPI(title="Meeting Helper")
controller = SessionController(
    transcribe_settings,
    AudioCaptureManager(MicrophoneSource(), SystemAudioSource()),
    WebSocketTranscriptionBackend(transcribe_settings.backend_url),
)
assistant = ChatAssistant(ChatSettings())


@app.get("/health")
async def health():
    return {"status": "ok", "session": controller.state.status.value}


@app.get("/devices")
async def devices():
    try:
        return [asdict(d) for d in controller.capture.list_devices()]
    except (MeetingHelperError, OSError) as exc:
        raise HTTPException(status_code=503, detail=f"Audio devices unavailable: {exc}")


@app.get("/session")
async def get_session():
    return controller.state


@app.post("/session/start")
async def start_session():
    return await controller.start()


@app.post("/session/stop")
async def stop_session():
    return await controller.stop()


@app.get("/transcript")
async def get_transcript():
    return controller.snapshot()


@app.delete("/transcript")
async def clear_transcript():
    controller.clear_transcript()
    return controller.snapshot()


@app.put("/speakers/{label}")
async def rename_speaker(label: str, req: RenameSpeakerRequest):
    try:
        controller.rename_speaker(label, req.name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown speaker {label}")
    return controller.snapshot()


@app.post("/chat")
async def chat(req: ChatRequest):
    stream = assistant.ask(
        req.question,
        controller.transcript_text,
        history=req.history,
        system_prompt=req.system_prompt,
    )
    return StreamingResponse(stream, media_type="text/plain")


@app.post("/chat/stop")
async def stop_chat():
    assistant.stop_generating()
    return {"status": "stopped"}


@app.websocket("/events")
async def events_endpoint(ws: WebSocket):
    await ws.accept()
    queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=256)

    def on_event(event: SessionEvent) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(event)

    unsubscribe = controller.subscribe(on_event)
    current = SessionEvent(
        kind=SessionEventKind.state, state=controller.state, display_text=controller.transcript_text
    )
    await ws.send_text(current.model_dump_json())

    # Push events in background; the receive loop only watches for disconnect
    relay_task = asyncio.create_task(_relay_events(queue, ws))
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        logger.info("Event subscriber disconnected")
    finally:
        unsubscribe()
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass


async def _relay_events(queue: asyncio.Queue, ws: WebSocket):
    """Forward controller events to one subscriber."""
    try:
        while True:
            event = await queue.get()
            await ws.send_text(event.model_dump_json())
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Event relay error")


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=settings.host, port=settings.port)
