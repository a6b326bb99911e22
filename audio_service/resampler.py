from __future__ import annotations

import numpy as np

from audio_service.models import CANONICAL_SAMPLE_RATE
from common.errors import ConverterError


def to_mono_float(samples: np.ndarray, channels: int) -> np.ndarray:
    """Convert a native buffer to float32 mono in [-1, 1].

    Integer input is scaled by its full range; multichannel input is
    averaged. A 1-D buffer with ``channels > 1`` is treated as interleaved.
    """
    data = np.asarray(samples)
    if data.dtype == np.int16:
        data = data.astype(np.float32) / 32768.0
    elif data.dtype == np.int32:
        data = data.astype(np.float32) / 2147483648.0
    elif data.dtype == np.uint8:
        data = (data.astype(np.float32) - 128.0) / 128.0
    elif np.issubdtype(data.dtype, np.floating):
        data = data.astype(np.float32, copy=False)
    else:
        raise ConverterError(f"Unsupported sample type: {data.dtype}")

    if data.ndim == 1:
        if channels == 1:
            return data
        if data.shape[0] % channels:
            raise ConverterError(f"Interleaved buffer of {data.shape[0]} samples is not divisible by {channels} channels")
        data = data.reshape(-1, channels)
    elif data.ndim != 2:
        raise ConverterError(f"Unsupported buffer shape: {data.shape}")

    if data.shape[1] != channels:
        raise ConverterError(f"Expected {channels} channels, got {data.shape[1]}")
    if channels == 1:
        return data[:, 0]
    return data.mean(axis=1).astype(np.float32, copy=False)


def float_to_pcm16(samples: np.ndarray) -> bytes:
    scaled = np.clip(samples, -1.0, 1.0) * 32767.0
    return np.round(scaled).astype("<i2").tobytes()


class LinearResampler:
    """Stateful linear-interpolation resampler producing mono float32.

    The last input sample and the fractional read position are carried from
    one buffer to the next, so a stream split into arbitrary buffers yields
    the same output as the unsplit stream.
    """

    def __init__(self, src_rate: int, channels: int, dst_rate: int = CANONICAL_SAMPLE_RATE):
        if src_rate <= 0 or dst_rate <= 0:
            raise ConverterError(f"Invalid sample rate conversion {src_rate} -> {dst_rate}")
        if channels < 1:
            raise ConverterError(f"Invalid channel count: {channels}")
        self.src_rate = int(src_rate)
        self.dst_rate = int(dst_rate)
        self.channels = int(channels)
        self._step = self.src_rate / self.dst_rate
        self._position = 0.0
        self._previous: np.ndarray | None = None

    @property
    def passthrough(self) -> bool:
        return self.src_rate == self.dst_rate

    def process(self, samples: np.ndarray) -> np.ndarray:
        mono = to_mono_float(samples, self.channels)
        if self.passthrough:
            return mono

        buffer = mono if self._previous is None else np.concatenate([self._previous, mono])
        if buffer.shape[0] < 2:
            self._previous = buffer[-1:] if buffer.shape[0] else self._previous
            return np.array([], dtype=np.float32)

        last = buffer.shape[0] - 1
        count = int(np.floor((last - self._position) / self._step)) + 1 if self._position <= last else 0
        positions = self._position + self._step * np.arange(count)
        out = np.interp(positions, np.arange(buffer.shape[0]), buffer)

        # the next buffer starts at the sample currently at index `last`
        self._position = self._position + count * self._step - last
        self._previous = buffer[-1:]
        return out.astype(np.float32, copy=False)

    def reset(self) -> None:
        self._position = 0.0
        self._previous = None
