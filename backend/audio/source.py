"""
Frame source contract and an in-memory implementation.

A frame source is whatever captures audio (browser mic relayed over a
WebSocket, a WAV file, a test harness). It publishes:
- every captured frame
- frames captured while speech is active
- segment boundaries decided upstream
- VAD state changes

The transcription pipeline only subscribes; it never decides speech or
segment boundaries itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol

from audio.frames import AudioFrame
from orchestrator.subscriptions import Subscribers, Unsubscribe


@dataclass(frozen=True)
class SegmentBoundary:
    """Upstream-detected end of an utterance (timestamps in ms)."""
    start_ms: int
    end_ms: int


class FrameSource(Protocol):
    """Structural type for anything the controller can subscribe to."""

    def subscribe_frames(self, handler: Callable[[AudioFrame], None]) -> Unsubscribe: ...

    def subscribe_speech_frames(self, handler: Callable[[AudioFrame], None]) -> Unsubscribe: ...

    def on_segment(self, handler: Callable[[SegmentBoundary], None]) -> Unsubscribe: ...

    def on_vad(self, handler: Callable[[bool], None]) -> Unsubscribe: ...


class InMemoryFrameSource:
    """
    Synchronous publish/subscribe hub implementing FrameSource.

    Speech frames are the subset of frames published while the most recent
    VAD state is "speech".
    """

    def __init__(self) -> None:
        self._frames: Subscribers[AudioFrame] = Subscribers("frames")
        self._speech_frames: Subscribers[AudioFrame] = Subscribers("speech_frames")
        self._segments: Subscribers[SegmentBoundary] = Subscribers("segments")
        self._vad: Subscribers[bool] = Subscribers("vad")
        self._speech_active = False

    # ------------------------------------------------------------------
    # FrameSource
    # ------------------------------------------------------------------

    def subscribe_frames(self, handler: Callable[[AudioFrame], None]) -> Unsubscribe:
        return self._frames.subscribe(handler)

    def subscribe_speech_frames(self, handler: Callable[[AudioFrame], None]) -> Unsubscribe:
        return self._speech_frames.subscribe(handler)

    def on_segment(self, handler: Callable[[SegmentBoundary], None]) -> Unsubscribe:
        return self._segments.subscribe(handler)

    def on_vad(self, handler: Callable[[bool], None]) -> Unsubscribe:
        return self._vad.subscribe(handler)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_frame(self, frame: AudioFrame) -> None:
        self._frames.emit(frame)
        if self._speech_active:
            self._speech_frames.emit(frame)

    def publish_vad(self, speech: bool) -> None:
        if speech == self._speech_active:
            return
        self._speech_active = speech
        self._vad.emit(speech)

    def publish_segment(self, segment: SegmentBoundary) -> None:
        self._segments.emit(segment)

    @property
    def speech_active(self) -> bool:
        return self._speech_active

    @property
    def subscriber_count(self) -> int:
        return len(self._frames) + len(self._speech_frames) + len(self._segments) + len(self._vad)
