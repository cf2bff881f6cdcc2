# backend/audio/preconnect.py
"""
Time-bounded FIFO of audio frames captured before a transport is ready.

Rules:
- Depth measured in milliseconds of audio (not frame count)
- Duration of each frame derived from its own sample rate and channel count
- Drop OLDEST frames when over budget so the freshest audio survives
- At least one frame is always retained, even if it alone exceeds the budget
- Deterministic, synchronous behavior
"""

from __future__ import annotations
from collections import deque
from typing import Deque

from audio.frames import AudioFrame
from constants import PRECONNECT_BUFFER_DEFAULT_MS, PRECONNECT_BUFFER_SOFT_MAX_MS
from observability.logger import log_event


def resolve_preconnect_budget(requested_ms: float | None) -> float:
    """
    Clamp a requested preconnect budget into [0, soft max].

    None selects the default. Out-of-range values are clamped with a warning.
    """
    if requested_ms is None:
        return float(PRECONNECT_BUFFER_DEFAULT_MS)

    if requested_ms < 0:
        _warn_clamped(requested_ms, 0)
        return 0.0

    if requested_ms > PRECONNECT_BUFFER_SOFT_MAX_MS:
        _warn_clamped(requested_ms, PRECONNECT_BUFFER_SOFT_MAX_MS)
        return float(PRECONNECT_BUFFER_SOFT_MAX_MS)

    return float(requested_ms)


def _warn_clamped(provided: float, clamped_to: float) -> None:
    log_event(
        {
            "event_type": "PRECONNECT_BUDGET_CLAMPED",
            "message": f"preconnect_buffer_ms={provided} out of range; clamped to {clamped_to}",
            "provided": provided,
            "clamped_to": clamped_to,
        },
        level="warn",
    )


class PreconnectBuffer:
    """
    Bounded FIFO of AudioFrame objects.

    Invariant after every push():
        duration_ms <= max_duration_ms  OR  len(self) == 1
    """

    def __init__(self, max_duration_ms: float | None = None) -> None:
        self._max_duration_ms: float = resolve_preconnect_budget(max_duration_ms)
        self._frames: Deque[AudioFrame] = deque()
        self._duration_ms: float = 0.0
        self.dropped: int = 0

    # -------------------------
    # Core operations
    # -------------------------

    def push(self, frame: AudioFrame) -> None:
        """Append a frame, then evict the oldest while over budget."""
        self._frames.append(frame)
        self._duration_ms += frame.duration_ms

        while self._duration_ms > self._max_duration_ms and len(self._frames) > 1:
            oldest = self._frames.popleft()
            self._duration_ms -= oldest.duration_ms
            self.dropped += 1

        if len(self._frames) == 1:
            # Re-anchor the running total to avoid float drift
            self._duration_ms = self._frames[0].duration_ms

    def drain(self) -> list[AudioFrame]:
        """
        Return all frames oldest-first and empty the buffer.

        The returned list is independent of the buffer.
        """
        frames = list(self._frames)
        self.clear()
        return frames

    def clear(self) -> None:
        """Drop all buffered frames without counting them as drops."""
        self._frames.clear()
        self._duration_ms = 0.0

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def max_duration_ms(self) -> float:
        return self._max_duration_ms

    @property
    def duration_ms(self) -> float:
        return self._duration_ms

    def snapshot(self) -> dict[str, float | int]:
        """Lightweight snapshot for logging."""
        return {
            "frames": len(self._frames),
            "duration_ms": self._duration_ms,
            "max_duration_ms": self._max_duration_ms,
            "dropped": self.dropped,
        }
