"""
Audio frame primitives.

Pure data containers plus duration math.
No queues, no timing logic.
"""

from __future__ import annotations
from dataclasses import dataclass

import numpy as np

from constants import SUPPORTED_CHANNEL_COUNTS


def frame_duration_ms(samples: int, sample_rate: int, channels: int) -> float:
    """
    Duration in milliseconds of `samples` interleaved PCM samples.

    duration_ms = samples / (sample_rate × channels) × 1000

    Non-positive rates or channel counts yield 0.0 rather than raising,
    so a malformed frame never poisons a duration budget.
    """
    if samples <= 0 or sample_rate <= 0 or channels <= 0:
        return 0.0
    return samples / (sample_rate * channels) * 1000.0


@dataclass(frozen=True, eq=False)
class AudioFrame:
    """
    Canonical audio frame used throughout the transcription pipeline.

    pcm:
        Interleaved signed 16-bit samples (numpy int16, 1-D).

    ts_ms:
        Timestamp (milliseconds) when the frame was captured or received.
        Used for observability only.

    sample_rate:
        Samples per second per channel.

    channels:
        1 (mono) or 2 (stereo, interleaved L/R).
    """
    pcm: np.ndarray
    ts_ms: int
    sample_rate: int
    channels: int = 1

    def __post_init__(self) -> None:
        if self.channels not in SUPPORTED_CHANNEL_COUNTS:
            raise ValueError(f"Unsupported channel count: {self.channels}")
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be > 0")
        if self.pcm.dtype != np.int16 or self.pcm.ndim != 1:
            raise ValueError("pcm must be a 1-D int16 array")

    @property
    def samples(self) -> int:
        return int(self.pcm.size)

    @property
    def duration_ms(self) -> float:
        return frame_duration_ms(self.samples, self.sample_rate, self.channels)

    @property
    def lane(self) -> tuple[int, int]:
        """(sample_rate, channels) pair used to reject mixed-format audio."""
        return (self.sample_rate, self.channels)

    def muted(self) -> AudioFrame:
        """Same-shape frame with every sample zeroed."""
        return AudioFrame(
            pcm=np.zeros_like(self.pcm),
            ts_ms=self.ts_ms,
            sample_rate=self.sample_rate,
            channels=self.channels,
        )

    def to_bytes(self) -> bytes:
        """Little-endian PCM16 bytes."""
        return self.pcm.astype("<i2", copy=False).tobytes()

    @classmethod
    def from_bytes(
        cls,
        pcm_bytes: bytes,
        *,
        ts_ms: int,
        sample_rate: int,
        channels: int = 1,
    ) -> AudioFrame:
        """Build a frame from little-endian PCM16 bytes (copied)."""
        if len(pcm_bytes) % 2 != 0:
            raise ValueError("PCM16 payload must have an even byte length")
        pcm = np.frombuffer(pcm_bytes, dtype="<i2").astype(np.int16)
        return cls(pcm=pcm, ts_ms=ts_ms, sample_rate=sample_rate, channels=channels)
