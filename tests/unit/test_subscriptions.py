# pylint: disable=missing-module-docstring,missing-function-docstring

from typing import Any

import numpy as np
import pytest

import orchestrator.subscriptions as subscriptions_mod
from audio.frames import AudioFrame
from audio.source import InMemoryFrameSource, SegmentBoundary
from orchestrator.subscriptions import Subscribers


def test_emit_reaches_handlers_in_order():
    subs: Subscribers[int] = Subscribers("test")
    seen: list[str] = []

    subs.subscribe(lambda v: seen.append(f"a{v}"))
    subs.subscribe(lambda v: seen.append(f"b{v}"))
    subs.emit(1)

    assert seen == ["a1", "b1"]


def test_unsubscribe_is_idempotent():
    subs: Subscribers[int] = Subscribers("test")
    seen: list[int] = []

    unsub = subs.subscribe(seen.append)
    unsub()
    unsub()
    subs.emit(1)

    assert not seen
    assert len(subs) == 0


def test_failing_handler_is_isolated(monkeypatch: pytest.MonkeyPatch):
    emitted: list[dict[str, Any]] = []

    def fake_log_event(payload: dict[str, Any], *, level: str = "info") -> None:
        emitted.append({**payload, "level": level})

    monkeypatch.setattr(subscriptions_mod, "log_event", fake_log_event)

    subs: Subscribers[int] = Subscribers("partials")
    seen: list[int] = []

    def boom(_: int) -> None:
        raise RuntimeError("handler bug")

    subs.subscribe(boom)
    subs.subscribe(seen.append)
    subs.emit(5)

    assert seen == [5]
    assert emitted[0]["event_type"] == "SUBSCRIBER_HANDLER_FAILED"
    assert emitted[0]["channel"] == "partials"
    assert emitted[0]["level"] == "error"


def test_unsubscribe_during_emit_uses_snapshot():
    subs: Subscribers[int] = Subscribers("test")
    seen: list[str] = []
    unsubs = []

    def first(_: int) -> None:
        seen.append("first")
        unsubs[1]()

    unsubs.append(subs.subscribe(first))
    unsubs.append(subs.subscribe(lambda _: seen.append("second")))

    subs.emit(1)
    subs.emit(2)

    assert seen == ["first", "second", "first"]


# ---------------------------------------------------------------------
# InMemoryFrameSource
# ---------------------------------------------------------------------

def make_frame(ts_ms: int) -> AudioFrame:
    return AudioFrame(pcm=np.zeros(320, dtype=np.int16), ts_ms=ts_ms, sample_rate=16_000)


def test_speech_frames_follow_vad():
    source = InMemoryFrameSource()
    all_frames: list[int] = []
    speech_frames: list[int] = []
    source.subscribe_frames(lambda f: all_frames.append(f.ts_ms))
    source.subscribe_speech_frames(lambda f: speech_frames.append(f.ts_ms))

    source.publish_frame(make_frame(0))
    source.publish_vad(True)
    source.publish_frame(make_frame(20))
    source.publish_vad(False)
    source.publish_frame(make_frame(40))

    assert all_frames == [0, 20, 40]
    assert speech_frames == [20]


def test_vad_only_emits_changes():
    source = InMemoryFrameSource()
    seen: list[bool] = []
    source.on_vad(seen.append)

    source.publish_vad(False)
    source.publish_vad(True)
    source.publish_vad(True)
    source.publish_vad(False)

    assert seen == [True, False]


def test_segments_and_subscriber_count():
    source = InMemoryFrameSource()
    seen: list[SegmentBoundary] = []
    unsub = source.on_segment(seen.append)

    source.publish_segment(SegmentBoundary(start_ms=0, end_ms=900))
    assert seen == [SegmentBoundary(start_ms=0, end_ms=900)]
    assert source.subscriber_count == 1

    unsub()
    assert source.subscriber_count == 0
