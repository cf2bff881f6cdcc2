"""
Inbound audio framing for the ingest WebSocket.

Each binary message from the client is one frame of mic audio:

    [u32 LE seq_num][PCM16 samples, interleaved, session format]

The PCM body must be non-empty, made of whole sample frames for the
session's channel count, and at most C2S_MAX_PCM_BYTES long. Sequence
numbers run SEQ_NUM_START..SEQ_NUM_MAX and wrap back to SEQ_NUM_START.

Gateway usage:

    decoded = decode_c2s_frame(payload, ts_ms=now_ms, audio_format=fmt)
    check = check_sequence_gap(last_seq=prev, current_seq=decoded.sequence_num)
    if check.gap:
        log_event({"event_type": "SEQ_GAP_DETECTED", "gap_size": check.gap_size, ...})
    source.publish_frame(decoded.frame)
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional

from audio.frames import AudioFrame
from constants import (
    AUDIO_FORMAT_DEFAULT,
    C2S_MAX_PCM_BYTES,
    C2S_SEQ_NUM_BYTES,
    SEQ_NUM_START,
    SEQ_NUM_MAX,
    AudioFormat,
)

_SEQ_HEADER = struct.Struct("<I")
_SEQ_SPAN = SEQ_NUM_MAX - SEQ_NUM_START + 1


class BinaryProtocolError(Exception):
    """Inbound binary frame violates the framing contract; drop it."""


class InvalidFrameLength(BinaryProtocolError):
    """Frame has no audio, too much audio, or a partial sample frame."""


class InvalidSequenceNumber(BinaryProtocolError):
    pass


def _validate_seq(seq: int) -> int:
    if not SEQ_NUM_START <= seq <= SEQ_NUM_MAX:
        raise InvalidSequenceNumber(f"Invalid seq_num: {seq}")
    return seq


def next_seq(seq: int) -> int:
    """Sequence number that follows `seq`, wrapping at SEQ_NUM_MAX."""
    return SEQ_NUM_START if seq == SEQ_NUM_MAX else seq + 1


def is_seq_next(prev: int, current: int) -> bool:
    return current == next_seq(prev)


# ------------------------------------------------------------------
# Encode / decode
# ------------------------------------------------------------------

@dataclass(frozen=True)
class DecodedFrame:
    sequence_num: int
    frame: AudioFrame


def encode_c2s_frame(*, sequence_num: int, pcm_bytes: bytes) -> bytes:
    """Build a client frame (tools and tests play the client)."""
    return _SEQ_HEADER.pack(_validate_seq(sequence_num)) + pcm_bytes


def decode_c2s_frame(
    payload: bytes,
    *,
    ts_ms: int,
    audio_format: AudioFormat = AUDIO_FORMAT_DEFAULT,
) -> DecodedFrame:
    """
    Split the header off `payload` and wrap the samples as an AudioFrame
    stamped with `ts_ms`.

    Raises:
        InvalidFrameLength, InvalidSequenceNumber
    """
    body_len = len(payload) - C2S_SEQ_NUM_BYTES
    if body_len <= 0:
        raise InvalidFrameLength(f"C2S frame length {len(payload)} carries no audio")
    if body_len > C2S_MAX_PCM_BYTES:
        raise InvalidFrameLength(f"PCM length {body_len} > {C2S_MAX_PCM_BYTES}")

    stride = audio_format.sample_width_bytes * audio_format.channels
    if body_len % stride:
        raise InvalidFrameLength(f"PCM length {body_len} is not a multiple of {stride}")

    (seq,) = _SEQ_HEADER.unpack_from(payload)
    _validate_seq(seq)

    frame = AudioFrame.from_bytes(
        payload[C2S_SEQ_NUM_BYTES:],
        ts_ms=ts_ms,
        sample_rate=audio_format.sample_rate_hz,
        channels=audio_format.channels,
    )
    return DecodedFrame(sequence_num=seq, frame=frame)


# ------------------------------------------------------------------
# Continuity
# ------------------------------------------------------------------

@dataclass(frozen=True)
class SeqCheckResult:
    gap: bool
    expected: int
    actual: int

    @property
    def gap_size(self) -> int:
        """Frames skipped between `expected` and `actual` (wrap-aware)."""
        if not self.gap:
            return 0
        return (self.actual - self.expected) % _SEQ_SPAN


def check_sequence_gap(*, last_seq: Optional[int], current_seq: int) -> SeqCheckResult:
    """Compare `current_seq` with the successor of `last_seq`. Never raises."""
    if last_seq is None:
        return SeqCheckResult(gap=False, expected=current_seq, actual=current_seq)

    expected = next_seq(last_seq)
    return SeqCheckResult(gap=current_seq != expected, expected=expected, actual=current_seq)
