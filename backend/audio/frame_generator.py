"""
PCM frame splitting utilities (pure).

Purpose:
- Cut a PCM16 blob (a WAV file body, a test fixture) into fixed-duration
  frames, the same shape a live capture source would publish.

Design:
- Pure functions only (no queues, no timing, no IO).
- Validation catches format drift early.
- Drops any incomplete trailing frame unless asked to keep it.
"""

from __future__ import annotations

from audio.frames import AudioFrame
from constants import AUDIO_FORMAT_DEFAULT, AudioFormat


def bytes_per_frame(audio_format: AudioFormat) -> int:
    """
    Bytes in one frame of `audio_format`.

    Raises:
        ValueError if the format cannot produce a non-empty frame.
    """
    if audio_format.sample_rate_hz <= 0:
        raise ValueError("sample_rate_hz must be > 0")
    if audio_format.frame_ms <= 0:
        raise ValueError("frame_ms must be > 0")
    if audio_format.channels <= 0:
        raise ValueError("channels must be > 0")
    if audio_format.sample_width_bytes <= 0:
        raise ValueError("sample_width_bytes must be > 0")

    size = audio_format.bytes_per_frame
    if size <= 0:
        raise ValueError("bytes_per_frame must be > 0")
    return size


def split_pcm_into_frames(
    pcm_bytes: bytes,
    *,
    audio_format: AudioFormat = AUDIO_FORMAT_DEFAULT,
    start_ts_ms: int = 0,
    keep_partial: bool = False,
) -> list[AudioFrame]:
    """
    Split raw little-endian PCM16 bytes into consecutive AudioFrames.

    Args:
        pcm_bytes:
            Raw interleaved PCM16 (no WAV header).
        audio_format:
            Format of the bytes; also sets the frame duration.
        start_ts_ms:
            Timestamp of the first frame; later frames advance by frame_ms.
        keep_partial:
            Emit a shorter trailing frame instead of dropping it
            (still trimmed to whole sample frames).

    Returns:
        Frames in order. Empty for empty input.
    """
    size = bytes_per_frame(audio_format)
    if not pcm_bytes:
        return []

    sample_frame_bytes = audio_format.sample_width_bytes * audio_format.channels

    out: list[AudioFrame] = []
    ts_ms = start_ts_ms
    for offset in range(0, len(pcm_bytes), size):
        chunk = pcm_bytes[offset : offset + size]
        if len(chunk) < size:
            if not keep_partial:
                break
            chunk = chunk[: len(chunk) - (len(chunk) % sample_frame_bytes)]
            if not chunk:
                break
        out.append(
            AudioFrame.from_bytes(
                chunk,
                ts_ms=ts_ms,
                sample_rate=audio_format.sample_rate_hz,
                channels=audio_format.channels,
            )
        )
        ts_ms += audio_format.frame_ms

    return out


def bytes_to_frame_count(num_bytes: int, *, audio_format: AudioFormat = AUDIO_FORMAT_DEFAULT) -> int:
    """
    Return the number of whole frames represented by num_bytes.

    Drops any incomplete trailing frame (floor division).
    """
    if num_bytes <= 0:
        return 0
    return num_bytes // bytes_per_frame(audio_format)
