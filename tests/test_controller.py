import pytest

from audio_service.capture import AudioCaptureManager
from common.config import TranscribeSettings
from common.errors import BackendError, InvalidCredentials
from common.schemas import AudioInputMode, SessionEventKind, SessionStatus
from gateway.controller import SessionController
from tests.fakes import FakeBackend, FakeSource, wait_for


def make_settings(**overrides):
    values = dict(access_key="AKIA", secret_key="secret", region="us-east-1",
                  audio_input_mode=AudioInputMode.both, shutdown_timeout_s=0.5)
    values.update(overrides)
    return TranscribeSettings(**values)


class Harness:
    def __init__(self, settings=None, mic=None, system=None, backend=None):
        self.mic = mic or FakeSource("microphone")
        self.system = system or FakeSource("system")
        self.backend = backend or FakeBackend()
        self.controller = SessionController(
            settings or make_settings(),
            AudioCaptureManager(self.mic, self.system),
            self.backend,
        )
        self.events = []
        self.controller.subscribe(self.events.append)

    @property
    def statuses(self):
        return [e.state.status for e in self.events if e.kind is SessionEventKind.state]

    @property
    def connection(self):
        return self.backend.connections[-1]


class TestStart:
    @pytest.mark.asyncio
    async def test_missing_credentials_fail_without_devices(self):
        h = Harness(settings=make_settings(access_key=""))
        state = await h.controller.start()

        assert state.status is SessionStatus.error
        assert "credentials" in state.message
        assert h.statuses == [SessionStatus.error]
        assert h.mic.handles == [] and h.system.handles == []
        assert h.backend.starts == []

    @pytest.mark.asyncio
    async def test_reaches_recording(self):
        h = Harness()
        state = await h.controller.start()

        assert state.status is SessionStatus.recording
        assert h.statuses == [SessionStatus.preparing, SessionStatus.recording]
        assert len(h.mic.handles) == 1 and len(h.system.handles) == 1
        start = h.backend.starts[0]
        assert start.sample_rate_hz == 16000
        assert start.partial_results_stability == "high"
        await h.controller.stop()

    @pytest.mark.asyncio
    async def test_no_microphone_falls_back_to_system_audio(self):
        h = Harness(mic=FakeSource("microphone", devices=[]))
        state = await h.controller.start()

        assert state.status is SessionStatus.recording
        assert state.warnings and "Microphone" in state.warnings[0]
        assert len(h.system.handles) == 1
        await h.controller.stop()

    @pytest.mark.asyncio
    async def test_all_sources_failing_is_error(self):
        h = Harness(settings=make_settings(audio_input_mode=AudioInputMode.mic_only),
                    mic=FakeSource("microphone", devices=[]))
        state = await h.controller.start()
        assert state.status is SessionStatus.error
        assert h.backend.starts == []

    @pytest.mark.asyncio
    async def test_backend_failure_releases_audio(self):
        h = Harness(backend=FakeBackend(error=BackendError("connection refused")))
        state = await h.controller.start()

        assert state.status is SessionStatus.error
        assert state.message == "connection refused"
        assert h.mic.released == h.mic.handles
        assert h.system.released == h.system.handles

    @pytest.mark.asyncio
    async def test_rejected_credentials_are_error(self):
        h = Harness(backend=FakeBackend(error=InvalidCredentials("rejected (403)")))
        state = await h.controller.start()
        assert state.status is SessionStatus.error
        assert not h.controller.capture.is_capturing

    @pytest.mark.asyncio
    async def test_driver_oserror_never_leaves_preparing(self):
        h = Harness(settings=make_settings(audio_input_mode=AudioInputMode.mic_only),
                    mic=FakeSource("microphone", error=OSError("PortAudio library not found")))
        state = await h.controller.start()
        assert state.status is SessionStatus.error
        assert "PortAudio library not found" in state.message

        h.mic.error = None
        state = await h.controller.start()
        assert state.status is SessionStatus.recording
        await h.controller.stop()

    @pytest.mark.asyncio
    async def test_unexpected_backend_failure_releases_audio(self):
        h = Harness(backend=FakeBackend(error=RuntimeError("event loop is closed")))
        state = await h.controller.start()

        assert state.status is SessionStatus.error
        assert "event loop is closed" in state.message
        assert h.mic.released == h.mic.handles
        assert not h.controller.capture.is_capturing

    @pytest.mark.asyncio
    async def test_error_is_not_terminal(self):
        backend = FakeBackend(error=BackendError("connection refused"))
        h = Harness(backend=backend)
        await h.controller.start()
        assert h.controller.state.status is SessionStatus.error

        backend.error = None
        state = await h.controller.start()
        assert state.status is SessionStatus.recording
        await h.controller.stop()

    @pytest.mark.asyncio
    async def test_start_while_recording_is_ignored(self):
        h = Harness()
        await h.controller.start()
        await h.controller.start()
        assert len(h.backend.connections) == 1
        await h.controller.stop()


class TestRecording:
    @pytest.mark.asyncio
    async def test_events_fold_into_transcript(self):
        h = Harness()
        await h.controller.start()
        h.connection.emit("hel", is_partial=True, speaker="spk_0")
        h.connection.emit("hello there", speaker="spk_0")
        h.connection.emit("hi", speaker="spk_1")

        await wait_for(lambda: len(h.controller.engine.segments) == 2)
        assert h.controller.transcript_text == "[spk_0] hello there\n[spk_1] hi"
        transcript_events = [e for e in h.events if e.kind is SessionEventKind.transcript]
        assert transcript_events[-1].display_text == h.controller.transcript_text
        await h.controller.stop()

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self):
        h = Harness()
        await h.controller.start()
        state = await h.controller.stop()

        assert state.status is SessionStatus.idle
        assert h.statuses[-2:] == [SessionStatus.stopping, SessionStatus.idle]
        assert h.mic.released == h.mic.handles
        assert h.connection.closed
        assert not h.controller.capture.is_capturing

    @pytest.mark.asyncio
    async def test_stop_logs_backend_error_it_overrides(self, caplog):
        h = Harness()
        await h.controller.start()
        h.controller._session.error = "Stream dropped"

        with caplog.at_level("WARNING", logger="gateway.controller"):
            state = await h.controller.stop()

        assert state.status is SessionStatus.idle
        assert "Stream dropped" in caplog.text

    @pytest.mark.asyncio
    async def test_stop_when_idle_does_nothing(self):
        h = Harness()
        state = await h.controller.stop()
        assert state.status is SessionStatus.idle
        assert h.events == []

    @pytest.mark.asyncio
    async def test_backend_error_surfaces_as_error_state(self):
        h = Harness()
        await h.controller.start()
        h.connection.emit("before the drop", speaker="spk_0")
        h.connection.fail("Stream dropped")

        await wait_for(lambda: h.controller.state.status is SessionStatus.error)
        assert h.controller.state.message == "Stream dropped"
        assert h.controller.transcript_text == "[spk_0] before the drop"
        assert h.mic.released == h.mic.handles

    @pytest.mark.asyncio
    async def test_clean_backend_end_returns_to_idle(self):
        h = Harness()
        await h.controller.start()
        h.connection.finish()

        await wait_for(lambda: h.controller.state.status is SessionStatus.idle)
        assert not h.controller.capture.is_capturing

    @pytest.mark.asyncio
    async def test_rename_and_clear_notify(self):
        h = Harness()
        await h.controller.start()
        h.connection.emit("hello", speaker="spk_0")
        await wait_for(lambda: h.controller.engine.segments)

        h.controller.rename_speaker("spk_0", "Alice")
        assert h.events[-1].display_text == "[Alice] hello"
        h.controller.clear_transcript()
        assert h.events[-1].display_text == ""
        assert h.controller.state.status is SessionStatus.recording
        await h.controller.stop()

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        h = Harness()
        seen = []
        unsubscribe = h.controller.subscribe(seen.append)
        unsubscribe()
        await h.controller.start()
        assert seen == []
        await h.controller.stop()
