from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Optional

from common.errors import BackendError, InvalidCredentials, MeetingHelperError
from common.schemas import Credentials, StartMessage, TranscriptionEvent
from transcribe_service.backend import BackendConnection, TranscriptionBackend

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    closed = "closed"
    opening = "opening"
    streaming = "streaming"
    closing = "closing"
    failed = "failed"


class TranscriptionSession:
    """Lifecycle of one streaming connection to the transcription backend.

    A session is single use: once it has left ``streaming`` it stays
    ``closed`` or ``failed``. Errors from the stream are recorded in
    ``error`` instead of being raised out of ``results()``.
    """

    LOG_EVERY_CHUNKS = 50

    def __init__(self, backend: TranscriptionBackend, shutdown_timeout: float = 2.0) -> None:
        self._backend = backend
        self.shutdown_timeout = shutdown_timeout
        self.state = StreamState.closed
        self.error: Optional[str] = None
        self.stream_id: Optional[str] = None
        self.chunks_sent = 0
        self._connection: BackendConnection | None = None
        self._results: asyncio.Queue[TranscriptionEvent | None] = asyncio.Queue()
        self._send_task: asyncio.Task | None = None
        self._receive_task: asyncio.Task | None = None
        self._used = False
        self._ended = False
        self._stop_requested = False

    async def open(self, credentials: Credentials, start: StartMessage, audio: AsyncIterator[bytes]) -> None:
        if self._used:
            raise RuntimeError("TranscriptionSession instances cannot be reopened")
        self._used = True
        if not credentials.is_valid:
            self._end()
            raise InvalidCredentials("Transcription credentials are missing")

        self.state = StreamState.opening
        self.stream_id = start.stream_id
        try:
            connection = await self._backend.connect(credentials, start)
        except MeetingHelperError as exc:
            self.state = StreamState.failed
            self.error = str(exc)
            self._end()
            raise

        if self._stop_requested:
            await self._close_connection(connection)
            self.state = StreamState.closed
            self._end()
            return

        self._connection = connection
        self.state = StreamState.streaming
        self._send_task = asyncio.create_task(self._send_loop(audio), name=f"send-{start.stream_id}")
        self._receive_task = asyncio.create_task(self._receive_loop(), name=f"receive-{start.stream_id}")

    async def _send_loop(self, audio: AsyncIterator[bytes]) -> None:
        try:
            async for chunk in audio:
                await self._connection.send_audio(chunk)
                self.chunks_sent += 1
                if self.chunks_sent % self.LOG_EVERY_CHUNKS == 0:
                    logger.debug("[%s] Sent %d audio chunks", self.stream_id, self.chunks_sent)
            logger.info("[%s] Audio stream ended after %d chunks", self.stream_id, self.chunks_sent)
            await self._connection.end_audio()
        except BackendError as exc:
            self._record_error(str(exc))
            # unblock the receive side so the result stream ends
            await self._close_connection(self._connection)

    async def _receive_loop(self) -> None:
        try:
            async for event in self._connection.events():
                self._results.put_nowait(event)
            logger.info("[%s] Transcription stream completed", self.stream_id)
        except BackendError as exc:
            self._record_error(str(exc))
        except Exception as exc:
            logger.exception("[%s] Unexpected error in result stream", self.stream_id)
            self._record_error(f"Unexpected transcription error: {exc}")
        finally:
            if self.state is StreamState.streaming:
                self.state = StreamState.failed if self.error else StreamState.closed
                if self._send_task is not None:
                    self._send_task.cancel()
                # the backend ended the stream, so stop() will not close it
                await self._close_connection(self._connection)
            self._end()

    def _record_error(self, message: str) -> None:
        if self.state is StreamState.closing:
            return
        if self.error is None:
            logger.error("[%s] %s", self.stream_id, message)
            self.error = message

    def _end(self) -> None:
        if not self._ended:
            self._ended = True
            self._results.put_nowait(None)

    async def results(self) -> AsyncIterator[TranscriptionEvent]:
        while True:
            event = await self._results.get()
            if event is None:
                return
            yield event

    async def stop(self) -> None:
        """Abruptly end the session. Safe to call repeatedly and from any state."""
        if self.state is StreamState.opening:
            self._stop_requested = True
            return
        if self.state is not StreamState.streaming:
            return

        logger.info("[%s] Stopping transcription", self.stream_id)
        self.state = StreamState.closing
        tasks = [t for t in (self._send_task, self._receive_task) if t is not None]
        for task in tasks:
            task.cancel()
        await self._close_connection(self._connection)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_timeout)
            if pending:
                logger.warning("[%s] %d tasks still running after stop", self.stream_id, len(pending))
        self.state = StreamState.closed
        self._end()

    async def _close_connection(self, connection: BackendConnection | None) -> None:
        if connection is None:
            return
        try:
            await asyncio.wait_for(connection.close(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("[%s] Backend did not close within %.1fs, abandoning connection",
                           self.stream_id, self.shutdown_timeout)
        except Exception:
            logger.debug("[%s] Error closing backend connection", self.stream_id, exc_info=True)
