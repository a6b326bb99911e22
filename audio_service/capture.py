from __future__ import annotations

import logging
from typing import AsyncIterator

from audio_service.mixer import AudioMixer
from audio_service.models import InputDevice
from audio_service.sources import AudioSource, SourceHandle
from common.errors import CapturePermissionError, DeviceError, MeetingHelperError
from common.schemas import AudioInputMode, CaptureConfig

logger = logging.getLogger(__name__)


class AudioCaptureManager:
    """Acquires the sources a CaptureConfig asks for and mixes them.

    Source failures degrade capability: a source that cannot be opened is
    skipped with a warning unless it was the only one requested.
    """

    def __init__(self, microphone: AudioSource, system_audio: AudioSource) -> None:
        self._microphone = microphone
        self._system_audio = system_audio
        self._opened: list[tuple[AudioSource, SourceHandle]] = []
        self._mixer: AudioMixer | None = None
        self.warnings: list[str] = []

    @property
    def is_capturing(self) -> bool:
        return self._mixer is not None

    def list_devices(self) -> list[InputDevice]:
        return self._microphone.enumerate()

    async def start(self, config: CaptureConfig) -> AsyncIterator[bytes]:
        if self._mixer is not None:
            raise RuntimeError("Capture already running")
        self.warnings = []
        failures: list[str] = []

        try:
            if config.mode in (AudioInputMode.mic_only, AudioInputMode.both):
                try:
                    handle = await self._open(self._microphone, config.microphone_id, config)
                    self._opened.append((self._microphone, handle))
                except DeviceError as exc:
                    if config.mode is AudioInputMode.mic_only:
                        raise
                    failures.append(f"Microphone unavailable: {exc}")

            if config.mode in (AudioInputMode.system_only, AudioInputMode.both):
                try:
                    handle = await self._open(self._system_audio, None, config)
                    self._opened.append((self._system_audio, handle))
                except (CapturePermissionError, DeviceError) as exc:
                    if config.mode is AudioInputMode.system_only:
                        raise DeviceError(f"System audio unavailable: {exc}") from exc
                    failures.append(f"System audio unavailable: {exc}")

            if not self._opened:
                raise DeviceError("; ".join(failures) or "No audio source could be opened")
        except BaseException:
            await self._release()
            raise

        for message in failures:
            logger.warning("[capture] %s", message)
        self.warnings = failures

        mixer = AudioMixer(config.sample_rate, config.queue_size)
        for source, handle in self._opened:
            mixer.add_source(source.kind, source.capture(handle))
        self._mixer = mixer
        logger.info("[capture] Started with %s", ", ".join(mixer.sources))
        return mixer.stream()

    async def _open(self, source: AudioSource, device_id, config: CaptureConfig) -> SourceHandle:
        try:
            return await source.open(device_id, config)
        except MeetingHelperError:
            raise
        except Exception as exc:
            logger.warning("[capture] %s driver failed", source.kind, exc_info=True)
            raise DeviceError(f"{source.kind} driver error: {exc}") from exc

    async def stop(self) -> None:
        mixer, self._mixer = self._mixer, None
        await self._release()
        if mixer is not None:
            await mixer.close()
            logger.info("[capture] Stopped")

    async def _release(self) -> None:
        opened, self._opened = self._opened, []
        for source, handle in opened:
            await source.close(handle)
