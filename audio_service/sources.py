from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

import numpy as np

from audio_service.models import InputDevice, RawFrame
from common.errors import DeviceError, DeviceUnavailable, NoShareableDisplay, PermissionDenied
from common.schemas import CaptureConfig

logger = logging.getLogger(__name__)


class SourceHandle:
    """An opened capture device and the buffered channel it produces into.

    ``push`` may be called from any thread (audio callbacks, recorder
    threads). Frames are queued on the owning event loop with a drop-oldest
    policy so the producer never blocks.
    """

    DROP_LOG_EVERY = 100

    def __init__(self, kind: str, device: InputDevice, loop: asyncio.AbstractEventLoop, queue_size: int = 64):
        self.kind = kind
        self.device = device
        self.stream: Any = None  # driver-specific stream or recorder
        self.dropped = 0
        self._loop = loop
        self._queue: asyncio.Queue[RawFrame | None] = asyncio.Queue(maxsize=max(1, queue_size))
        self._sequence = 0
        self._closed = False
        self._captured = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, samples: np.ndarray, sample_rate: int) -> None:
        if self._closed or self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(self._enqueue, samples, sample_rate)
        except RuntimeError:
            # loop shut down between the check and the call
            pass

    def _enqueue(self, samples: np.ndarray, sample_rate: int) -> None:
        if self._closed:
            return
        frame = RawFrame(samples=samples, sample_rate=int(sample_rate), sequence=self._sequence)
        self._sequence += 1
        self._offer(frame)

    def _offer(self, item: RawFrame | None) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            if self.dropped % self.DROP_LOG_EVERY == 0:
                logger.warning("[%s] Consumer is slow, dropped %d frames", self.kind, self.dropped)
        self._queue.put_nowait(item)

    def finish(self) -> None:
        """Mark the handle closed and wake the consumer. Loop thread only."""
        if self._closed:
            return
        self._closed = True
        self._offer(None)

    def finish_threadsafe(self) -> None:
        if self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(self.finish)
        except RuntimeError:
            pass


class AudioSource(ABC):
    """One kind of capture device producing native-format frames."""

    kind: str = "source"

    @abstractmethod
    def enumerate(self) -> list[InputDevice]:
        """Return the devices this source can open."""

    @abstractmethod
    async def open(self, device_id: Optional[str], config: CaptureConfig) -> SourceHandle:
        """Open a device and start it filling the handle."""

    @abstractmethod
    async def _release(self, handle: SourceHandle) -> None:
        """Stop the driver stream behind ``handle``."""

    async def capture(self, handle: SourceHandle) -> AsyncIterator[RawFrame]:
        """Yield frames in capture order until the handle is closed."""
        if handle._captured:
            raise RuntimeError(f"{self.kind} capture already consumed; open a new handle")
        handle._captured = True
        while True:
            frame = await handle._queue.get()
            if frame is None:
                return
            yield frame

    async def close(self, handle: SourceHandle) -> None:
        if handle.closed:
            return
        try:
            await self._release(handle)
        except Exception:
            logger.warning("[%s] Error while releasing %s", self.kind, handle.device.name, exc_info=True)
        finally:
            handle.finish()
            logger.info("[%s] Capture stopped: %s", self.kind, handle.device.name)


class MicrophoneSource(AudioSource):
    """Microphone capture through PortAudio (``sounddevice``)."""

    kind = "microphone"

    def __init__(self, driver: Any = None) -> None:
        self._driver = driver

    @property
    def driver(self) -> Any:
        if self._driver is None:
            try:
                import sounddevice
            except (ImportError, OSError) as exc:
                # sounddevice raises OSError when the PortAudio library is missing
                raise DeviceError(f"PortAudio is not available: {exc}") from exc

            self._driver = sounddevice
        return self._driver

    def enumerate(self) -> list[InputDevice]:
        sd = self.driver
        try:
            default_input = sd.default.device[0]
        except (TypeError, IndexError):
            default_input = None
        try:
            infos = list(sd.query_devices())
        except Exception as exc:
            raise DeviceError(f"Could not list microphones: {exc}") from exc

        devices = []
        for index, info in enumerate(infos):
            if info.get("max_input_channels", 0) <= 0:
                continue
            devices.append(
                InputDevice(
                    id=str(index),
                    name=info.get("name", f"device {index}"),
                    channels=int(info["max_input_channels"]),
                    default_sample_rate=float(info.get("default_samplerate", 0.0)),
                    is_default=index == default_input,
                )
            )
        return devices

    def _select(self, device_id: Optional[str]) -> InputDevice:
        devices = self.enumerate()
        if not devices:
            raise DeviceUnavailable("No microphone available")
        if device_id is not None:
            for device in devices:
                if device.id == device_id:
                    return device
            raise DeviceUnavailable(f"Microphone {device_id} is no longer available")
        return next((d for d in devices if d.is_default), devices[0])

    async def open(self, device_id: Optional[str], config: CaptureConfig) -> SourceHandle:
        device = self._select(device_id)
        handle = SourceHandle(self.kind, device, asyncio.get_running_loop(), config.queue_size)
        sample_rate = int(device.default_sample_rate) or config.sample_rate
        channels = min(device.channels, 2)

        def callback(indata, frames, time_info, status):
            if status:
                logger.debug("[microphone] %s", status)
            handle.push(indata.copy(), sample_rate)

        sd = self.driver
        try:
            stream = sd.InputStream(
                device=int(device.id),
                channels=channels,
                samplerate=sample_rate,
                blocksize=config.chunk_size,
                dtype="float32",
                callback=callback,
            )
        except Exception as exc:
            raise DeviceError(f"Could not open microphone {device.name}: {exc}") from exc
        try:
            stream.start()
        except Exception as exc:
            stream.close()
            raise DeviceError(f"Could not start microphone {device.name}: {exc}") from exc

        handle.stream = stream
        logger.info("[microphone] Capture started: %s (%d Hz, %d ch)", device.name, sample_rate, channels)
        return handle

    async def _release(self, handle: SourceHandle) -> None:
        stream = handle.stream
        handle.stream = None
        if stream is not None:
            stream.stop()
            stream.close()


class _LoopbackRecorder:
    def __init__(self, microphone: Any, handle: SourceHandle, sample_rate: int, numframes: int):
        self.microphone = microphone
        self.handle = handle
        self.sample_rate = sample_rate
        self.numframes = numframes
        self.started = threading.Event()
        self.stop_event = threading.Event()
        self.error: Exception | None = None
        self.thread = threading.Thread(target=self.run, name="loopback-recorder", daemon=True)

    def run(self) -> None:
        try:
            with self.microphone.recorder(samplerate=self.sample_rate) as recorder:
                self.started.set()
                while not self.stop_event.is_set():
                    data = recorder.record(numframes=self.numframes)
                    self.handle.push(np.asarray(data, dtype=np.float32), self.sample_rate)
        except Exception as exc:
            if not self.started.is_set():
                self.error = exc
            else:
                logger.exception("[system] Loopback recorder failed")
        finally:
            self.started.set()
            self.handle.finish_threadsafe()


class SystemAudioSource(AudioSource):
    """System output captured as a loopback input (``soundcard``)."""

    kind = "system"
    SAMPLE_RATE = 48000
    OPEN_TIMEOUT_S = 5.0

    def __init__(self, driver: Any = None) -> None:
        self._driver = driver
        self._recorders: dict[int, _LoopbackRecorder] = {}

    @property
    def driver(self) -> Any:
        if self._driver is None:
            try:
                import soundcard
            except Exception as exc:
                # soundcard connects to the platform audio server at import time
                raise DeviceError(f"System audio backend is not available: {exc}") from exc

            self._driver = soundcard
        return self._driver

    def enumerate(self) -> list[InputDevice]:
        sc = self.driver
        try:
            default_speaker = sc.default_speaker()
        except Exception:
            default_speaker = None
        try:
            microphones = sc.all_microphones(include_loopback=True)
        except Exception as exc:
            raise DeviceError(f"Could not list loopback devices: {exc}") from exc
        devices = []
        for mic in microphones:
            if not getattr(mic, "isloopback", False):
                continue
            devices.append(
                InputDevice(
                    id=str(mic.id),
                    name=mic.name,
                    channels=int(getattr(mic, "channels", 2)),
                    default_sample_rate=float(self.SAMPLE_RATE),
                    is_default=default_speaker is not None and mic.name == default_speaker.name,
                )
            )
        return devices

    def _loopback_for(self, device_id: Optional[str]) -> Any:
        try:
            sc = self.driver
            if device_id is None:
                speaker = sc.default_speaker()
                if speaker is None:
                    raise NoShareableDisplay("No output device to capture system audio from")
                device_id = str(speaker.name)
            return sc.get_microphone(id=device_id, include_loopback=True)
        except NoShareableDisplay:
            raise
        except Exception as exc:
            raise NoShareableDisplay(f"No loopback device for system audio: {exc}") from exc

    async def open(self, device_id: Optional[str], config: CaptureConfig) -> SourceHandle:
        microphone = self._loopback_for(device_id)
        device = InputDevice(
            id=str(getattr(microphone, "id", device_id or "default")),
            name=getattr(microphone, "name", "System audio"),
            channels=int(getattr(microphone, "channels", 2)),
            default_sample_rate=float(self.SAMPLE_RATE),
        )
        handle = SourceHandle(self.kind, device, asyncio.get_running_loop(), config.queue_size)
        recorder = _LoopbackRecorder(microphone, handle, self.SAMPLE_RATE, config.chunk_size)
        recorder.thread.start()

        started = await asyncio.to_thread(recorder.started.wait, self.OPEN_TIMEOUT_S)
        if recorder.error is not None or not started:
            recorder.stop_event.set()
            handle.finish()
            reason = recorder.error or "timed out waiting for the recorder"
            raise PermissionDenied(f"System audio capture refused: {reason}")

        handle.stream = recorder
        self._recorders[id(handle)] = recorder
        logger.info("[system] Capture started: %s", device.name)
        return handle

    async def _release(self, handle: SourceHandle) -> None:
        recorder = self._recorders.pop(id(handle), None)
        handle.stream = None
        if recorder is None:
            return
        recorder.stop_event.set()
        await asyncio.to_thread(recorder.thread.join, self.OPEN_TIMEOUT_S)
        if recorder.thread.is_alive():
            logger.warning("[system] Recorder thread did not exit within %.1fs", self.OPEN_TIMEOUT_S)
