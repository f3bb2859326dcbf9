"""
AudioClip value type: mono float32 PCM at a fixed sample rate.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

DEFAULT_SAMPLE_RATE = 24000


@dataclass
class AudioClip:
    """Decoded narration for one task."""
    samples: np.ndarray
    sample_rate: int = DEFAULT_SAMPLE_RATE
    channels: int = field(default=1, init=False)

    def __post_init__(self):
        self.samples = np.ascontiguousarray(self.samples, dtype=np.float32).reshape(-1)

    def __len__(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        """Length in seconds."""
        if self.sample_rate <= 0:
            return 0.0
        return len(self) / float(self.sample_rate)

    def to_bytes(self) -> bytes:
        """Raw little-endian float32 samples, as stored by the local adapters."""
        return self.samples.astype("<f4", copy=False).tobytes()

    @classmethod
    def from_bytes(cls, data: bytes, sample_rate: int = DEFAULT_SAMPLE_RATE) -> "AudioClip":
        return cls(np.frombuffer(data, dtype="<f4").copy(), sample_rate=sample_rate)

    @classmethod
    def from_pcm16(cls, data: bytes, sample_rate: int = DEFAULT_SAMPLE_RATE) -> "AudioClip":
        """Convert signed 16-bit little-endian PCM (TTS output) to float32."""
        if len(data) % 2:
            data = data[:-1]
        pcm = np.frombuffer(data, dtype="<i2").astype(np.float32)
        return cls(pcm / 32768.0, sample_rate=sample_rate)
