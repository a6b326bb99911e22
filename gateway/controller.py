from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, Optional

from audio_service.capture import AudioCaptureManager
from common.config import TranscribeSettings
from common.errors import DeviceError, MeetingHelperError
from common.schemas import (
    SessionEvent,
    SessionEventKind,
    SessionState,
    SessionStatus,
    TranscriptSnapshot,
)
from transcribe_service.backend import TranscriptionBackend
from transcribe_service.engine import TranscriptEngine
from transcribe_service.session import TranscriptionSession

logger = logging.getLogger(__name__)

Observer = Callable[[SessionEvent], None]

BUSY = (SessionStatus.preparing, SessionStatus.recording, SessionStatus.stopping)


class SessionController:
    """Top-level recording state machine.

    All state lives on the event loop thread. Audio and network activities
    hand data over through queues; only the pump task applies transcription
    events, so transcript edits never interleave with an update.
    """

    def __init__(
        self,
        settings: TranscribeSettings,
        capture: AudioCaptureManager,
        backend: TranscriptionBackend,
        engine: Optional[TranscriptEngine] = None,
    ) -> None:
        self.settings = settings
        self.capture = capture
        self.backend = backend
        self.engine = engine or TranscriptEngine()
        self._state = SessionState()
        self._observers: list[Observer] = []
        self._lock = asyncio.Lock()
        self._session: TranscriptionSession | None = None
        self._pump_task: asyncio.Task | None = None
        self._stop_requested = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transcript_text(self) -> str:
        return self.engine.display_text()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, kind: SessionEventKind) -> None:
        event = SessionEvent(kind=kind, state=self._state, display_text=self.engine.display_text())
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception("Session observer failed")

    def _set_state(self, status: SessionStatus, message: Optional[str] = None, warnings: Optional[list[str]] = None) -> None:
        self._state = SessionState(status=status, message=message, warnings=warnings or [])
        if status is SessionStatus.error:
            logger.error("Session error: %s", message)
        else:
            logger.info("Session state: %s", status.value)
        self._notify(SessionEventKind.state)

    async def start(self) -> SessionState:
        async with self._lock:
            if self._state.status in BUSY:
                logger.warning("Start ignored, session is %s", self._state.status.value)
                return self._state

            credentials = self.settings.credentials()
            if not credentials.is_valid:
                self._set_state(SessionStatus.error, "Transcription credentials are not configured")
                return self._state

            self._set_state(SessionStatus.preparing)
            try:
                audio = await self.capture.start(self.settings.capture_config())
            except DeviceError as exc:
                self._set_state(SessionStatus.error, str(exc))
                return self._state
            except Exception as exc:
                logger.exception("Unexpected error starting audio capture")
                await self.capture.stop()
                self._set_state(SessionStatus.error, f"Audio capture failed: {exc}")
                return self._state

            session = TranscriptionSession(self.backend, shutdown_timeout=self.settings.shutdown_timeout_s)
            start = self.settings.start_message(uuid.uuid4().hex)
            try:
                await session.open(credentials, start, audio)
            except MeetingHelperError as exc:
                await self.capture.stop()
                self._set_state(SessionStatus.error, str(exc))
                return self._state
            except Exception as exc:
                logger.exception("Unexpected error opening transcription stream")
                await self.capture.stop()
                self._set_state(SessionStatus.error, f"Transcription failed to start: {exc}")
                return self._state

            self._session = session
            self._stop_requested = False
            self._set_state(SessionStatus.recording, warnings=list(self.capture.warnings))
            self._pump_task = asyncio.create_task(self._pump(session), name="transcript-pump")
            return self._state

    async def _pump(self, session: TranscriptionSession) -> None:
        async for event in session.results():
            self.engine.apply(event)
            self._notify(SessionEventKind.transcript)

        if self._stop_requested:
            return

        # the backend ended the stream on its own
        await self.capture.stop()
        if self._stop_requested:
            return
        self._session = None
        self._pump_task = None
        if session.error:
            self._set_state(SessionStatus.error, session.error)
        else:
            self._set_state(SessionStatus.idle)

    async def stop(self) -> SessionState:
        async with self._lock:
            if self._state.status is not SessionStatus.recording:
                return self._state

            self._stop_requested = True
            self._set_state(SessionStatus.stopping)
            # audio first so nothing new is produced, then the stream
            try:
                await self.capture.stop()
            except Exception:
                logger.exception("Error stopping audio capture")
            session, self._session = self._session, None
            if session is not None:
                try:
                    await session.stop()
                except Exception:
                    logger.exception("Error stopping transcription")

            task, self._pump_task = self._pump_task, None
            if task is not None and not task.done():
                try:
                    await asyncio.wait_for(task, timeout=self.settings.shutdown_timeout_s)
                except asyncio.TimeoutError:
                    logger.warning("Transcript pump did not finish, cancelled")
            # a user stop wins over a backend failure that raced with it
            if session is not None and session.error:
                logger.warning("Transcription stream failed while stopping: %s", session.error)
            self._set_state(SessionStatus.idle)
            return self._state

    def snapshot(self) -> TranscriptSnapshot:
        return self.engine.snapshot()

    def rename_speaker(self, label: str, name: str) -> None:
        self.engine.rename_speaker(label, name)
        self._notify(SessionEventKind.transcript)

    def clear_transcript(self) -> None:
        self.engine.clear()
        self._notify(SessionEventKind.transcript)
