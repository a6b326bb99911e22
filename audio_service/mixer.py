from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from audio_service.models import CANONICAL_SAMPLE_RATE, AudioFrame, RawFrame
from audio_service.resampler import LinearResampler, float_to_pcm16
from common.errors import ConverterError

logger = logging.getLogger(__name__)


class AudioMixer:
    """Merges several native frame streams into one canonical PCM stream.

    Frames are forwarded in arrival order. There is no summing across
    sources; ordering is only guaranteed within one source.
    """

    def __init__(self, target_rate: int = CANONICAL_SAMPLE_RATE, queue_size: int = 64) -> None:
        self.target_rate = target_rate
        self.dropped = 0
        self._out: asyncio.Queue[AudioFrame | None] = asyncio.Queue(maxsize=max(1, queue_size))
        self._tasks: dict[str, asyncio.Task] = {}
        self._active = 0
        self._closed = False

    @property
    def sources(self) -> list[str]:
        return list(self._tasks)

    def add_source(self, name: str, frames: AsyncIterator[RawFrame]) -> None:
        if self._closed:
            raise RuntimeError("Mixer is closed")
        if name in self._tasks:
            raise RuntimeError(f"Source {name} already added")
        self._active += 1
        self._tasks[name] = asyncio.create_task(self._pump(name, frames), name=f"mixer-{name}")

    async def _pump(self, name: str, frames: AsyncIterator[RawFrame]) -> None:
        resampler: LinearResampler | None = None
        sequence = 0
        try:
            async for frame in frames:
                if resampler is None:
                    # device formats are only known once audio flows
                    resampler = LinearResampler(frame.sample_rate, frame.channels, self.target_rate)
                    logger.info("[%s] Input format: %d Hz, %d ch", name, frame.sample_rate, frame.channels)
                samples = resampler.process(frame.samples)
                if samples.size == 0:
                    continue
                self._offer(AudioFrame(source=name, sequence=sequence, data=float_to_pcm16(samples)))
                sequence += 1
        except ConverterError as exc:
            logger.warning("[%s] Dropping source, format conversion failed: %s", name, exc)
        except Exception:
            logger.exception("[%s] Source failed", name)
        finally:
            self._active -= 1
            if self._active == 0 and not self._closed:
                self._offer(None)

    def _offer(self, frame: AudioFrame | None) -> None:
        if self._out.full():
            self._out.get_nowait()
            self.dropped += 1
            if self.dropped % 100 == 0:
                logger.warning("Mixer output is slow, dropped %d frames", self.dropped)
        self._out.put_nowait(frame)

    async def frames(self) -> AsyncIterator[AudioFrame]:
        while True:
            frame = await self._out.get()
            if frame is None:
                return
            yield frame

    async def stream(self) -> AsyncIterator[bytes]:
        async for frame in self.frames():
            yield frame.data

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._offer(None)
