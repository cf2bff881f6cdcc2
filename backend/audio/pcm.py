"""PCM buffer utilities (concatenation, overlap tails, WAV encoding)."""
from __future__ import annotations

import io
import wave
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from audio.frames import AudioFrame, frame_duration_ms
from constants import AUDIO_SAMPLE_WIDTH_BYTES


_EMPTY_PCM = np.zeros(0, dtype=np.int16)


def concat_pcm(frames: Sequence[AudioFrame], head: np.ndarray | None = None) -> np.ndarray:
    """
    Concatenate frame samples in order, optionally prefixed by `head`.

    Always returns a fresh array; inputs are never aliased.
    """
    parts: list[np.ndarray] = []
    if head is not None and head.size:
        parts.append(head)
    parts.extend(f.pcm for f in frames if f.pcm.size)
    if not parts:
        return _EMPTY_PCM.copy()
    return np.concatenate(parts).astype(np.int16, copy=False)


def overlap_samples(overlap_ms: float, sample_rate: int, channels: int) -> int:
    """
    Interleaved sample count covering `overlap_ms`, floored to whole
    multi-channel sample frames so the tail never splits an L/R pair.
    """
    if overlap_ms <= 0 or sample_rate <= 0 or channels <= 0:
        return 0
    per_channel = int(overlap_ms / 1000.0 * sample_rate)
    return per_channel * channels


def tail(pcm: np.ndarray, samples: int) -> np.ndarray:
    """Copy of the last `samples` samples (fewer if `pcm` is shorter)."""
    if samples <= 0 or pcm.size == 0:
        return _EMPTY_PCM.copy()
    return pcm[-samples:].copy()


@dataclass(frozen=True, eq=False)
class PcmChunk:
    """
    One materialized unit of audio handed to a batch transcription call.

    pcm:
        Interleaved int16 samples (overlap head + accumulated frames).
    """
    pcm: np.ndarray
    sample_rate: int
    channels: int

    @property
    def samples(self) -> int:
        return int(self.pcm.size)

    @property
    def duration_ms(self) -> float:
        return frame_duration_ms(self.samples, self.sample_rate, self.channels)

    def to_bytes(self) -> bytes:
        return self.pcm.astype("<i2", copy=False).tobytes()

    def to_wav(self) -> bytes:
        return encode_wav_pcm16(self.pcm, sample_rate=self.sample_rate, channels=self.channels)


def encode_wav_pcm16(pcm: np.ndarray, *, sample_rate: int, channels: int) -> bytes:
    """
    Wrap interleaved int16 samples in a RIFF/WAVE container (44-byte header).
    """
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(AUDIO_SAMPLE_WIDTH_BYTES)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm.astype("<i2", copy=False).tobytes())
    return buf.getvalue()
