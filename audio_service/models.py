"""Internal models for audio capture and conversion."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

CANONICAL_SAMPLE_RATE = 16000
CANONICAL_SAMPLE_WIDTH = 2  # bytes, signed 16-bit little endian


@dataclass(frozen=True)
class InputDevice:
    id: str
    name: str
    channels: int
    default_sample_rate: float
    is_default: bool = False


@dataclass
class RawFrame:
    samples: np.ndarray
    sample_rate: int
    sequence: int

    @property
    def channels(self) -> int:
        return 1 if self.samples.ndim == 1 else int(self.samples.shape[1])


@dataclass
class AudioFrame:
    source: str
    sequence: int
    data: bytes

    @property
    def sample_count(self) -> int:
        return len(self.data) // CANONICAL_SAMPLE_WIDTH
