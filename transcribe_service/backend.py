from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import Counter
from typing import AsyncIterator, Optional

import websockets

from common.errors import BackendError, InvalidCredentials
from common.schemas import (
    Credentials,
    EndMessage,
    Result,
    ServerMessageType,
    StartMessage,
    TranscriptEventMessage,
    TranscriptionEvent,
)

logger = logging.getLogger(__name__)


def speaker_label(result: Result) -> Optional[str]:
    """Most common item speaker of the first alternative, as ``spk_<n>``."""
    if not result.alternatives:
        return None
    speakers = [item.speaker for item in result.alternatives[0].items if item.speaker]
    if not speakers:
        return None
    speaker = Counter(speakers).most_common(1)[0][0]
    return speaker if speaker.startswith("spk_") else f"spk_{speaker}"


def parse_results(message: TranscriptEventMessage) -> list[TranscriptionEvent]:
    events: list[TranscriptionEvent] = []
    for result in message.transcript.results:
        if not result.alternatives:
            continue
        text = result.alternatives[0].transcript.strip()
        if not text:
            continue
        events.append(
            TranscriptionEvent(
                text=text,
                is_partial=result.is_partial,
                speaker_label=speaker_label(result),
            )
        )
    return events


class BackendConnection(ABC):
    """One live bidirectional stream to a transcription backend."""

    @abstractmethod
    async def send_audio(self, chunk: bytes) -> None: ...

    @abstractmethod
    async def end_audio(self) -> None: ...

    @abstractmethod
    def events(self) -> AsyncIterator[TranscriptionEvent]: ...

    @abstractmethod
    async def close(self) -> None: ...


class TranscriptionBackend(ABC):
    @abstractmethod
    async def connect(self, credentials: Credentials, start: StartMessage) -> BackendConnection:
        """Open a stream and send the start-of-stream request."""


class WebSocketConnection(BackendConnection):
    def __init__(self, ws, stream_id: str) -> None:
        self._ws = ws
        self.stream_id = stream_id

    async def send_audio(self, chunk: bytes) -> None:
        try:
            await self._ws.send(chunk)
        except websockets.ConnectionClosed as exc:
            raise BackendError(f"Transcription stream closed while sending audio: {exc}") from exc

    async def end_audio(self) -> None:
        try:
            await self._ws.send(EndMessage(stream_id=self.stream_id).model_dump_json())
        except websockets.ConnectionClosed:
            logger.debug("Stream %s already closed at end of audio", self.stream_id)

    async def events(self) -> AsyncIterator[TranscriptionEvent]:
        try:
            async for message in self._ws:
                if not isinstance(message, str):
                    continue
                data = json.loads(message)
                kind = data.get("type")
                if kind == ServerMessageType.transcript:
                    for event in parse_results(TranscriptEventMessage(**data)):
                        yield event
                elif kind == ServerMessageType.error:
                    raise BackendError(data.get("detail") or "Transcription backend error")
                elif kind == ServerMessageType.complete:
                    logger.info("Stream %s completed by backend", self.stream_id)
                    return
        except websockets.ConnectionClosedOK:
            return
        except websockets.ConnectionClosed as exc:
            raise BackendError(f"Transcription stream dropped: {exc}") from exc
        except (json.JSONDecodeError, ValueError) as exc:
            raise BackendError(f"Malformed transcription event: {exc}") from exc

    async def close(self) -> None:
        await self._ws.close()


class WebSocketTranscriptionBackend(TranscriptionBackend):
    """Streams PCM16 audio to a WebSocket transcription endpoint."""

    def __init__(self, url: str, open_timeout: float = 10.0, close_timeout: float = 2.0) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self.close_timeout = close_timeout

    async def connect(self, credentials: Credentials, start: StartMessage) -> WebSocketConnection:
        headers = {
            "X-Access-Key-Id": credentials.access_key,
            "X-Secret-Access-Key": credentials.secret_key,
            "X-Region": credentials.region,
        }
        logger.info("Connecting to %s (region: %s, language: %s)", self.url, credentials.region, start.language_code)
        try:
            ws = await websockets.connect(
                self.url,
                additional_headers=headers,
                open_timeout=self.open_timeout,
                close_timeout=self.close_timeout,
                ping_interval=30,
                ping_timeout=60,
            )
        except websockets.InvalidStatus as exc:
            status = exc.response.status_code
            if status in (401, 403):
                raise InvalidCredentials(f"Transcription backend rejected credentials ({status})") from exc
            raise BackendError(f"Transcription backend refused connection ({status})") from exc
        except (OSError, asyncio.TimeoutError, websockets.InvalidHandshake, websockets.InvalidURI) as exc:
            raise BackendError(f"Could not connect to transcription backend: {exc}") from exc

        try:
            await ws.send(start.model_dump_json())
        except websockets.ConnectionClosed as exc:
            raise BackendError(f"Transcription backend closed during start: {exc}") from exc
        logger.info("Stream %s started (stabilization: %s, speaker labels: %s)",
                    start.stream_id, start.partial_results_stability, start.show_speaker_label)
        return WebSocketConnection(ws, start.stream_id)
