# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
from typing import Any

import numpy as np
import pytest

import orchestrator.chunking as chunking_mod
from adapters.asr.errors import OperationTimeoutError, ProviderError
from audio.frames import AudioFrame
from audio.pcm import PcmChunk
from orchestrator.cancellation import CancelToken
from orchestrator.chunking import ChunkedAggregator, ChunkingOptions


def make_frame(value: int, *, ms: int = 20, sample_rate: int = 16_000) -> AudioFrame:
    return AudioFrame(
        pcm=np.full(sample_rate * ms // 1000, value, dtype=np.int16),
        ts_ms=0,
        sample_rate=sample_rate,
    )


class Recorder:
    """Collects flush inputs and callback outputs; optionally gates flushes."""

    def __init__(self) -> None:
        self.chunks: list[PcmChunk] = []
        self.results: list[int] = []
        self.errors: list[Exception] = []
        self.gate: asyncio.Event | None = None
        self.fail_next = False
        self.got_result = asyncio.Event()
        self.got_error = asyncio.Event()

    async def on_flush(self, chunk: PcmChunk, token: CancelToken) -> int:
        self.chunks.append(chunk)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_next:
            self.fail_next = False
            raise ProviderError("chunk rejected", provider_id="fake")
        return chunk.samples

    def on_result(self, value: int) -> None:
        self.results.append(value)
        self.got_result.set()

    def on_error(self, error: Exception) -> None:
        self.errors.append(error)
        self.got_error.set()

    def make(self, **options: Any) -> ChunkedAggregator[int]:
        return ChunkedAggregator(
            on_flush=self.on_flush,
            on_result=self.on_result,
            on_error=self.on_error,
            options=ChunkingOptions(**options),
        )


@pytest.fixture(name="emitted")
def fixture_emitted(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []

    def fake_log_event(payload: dict[str, Any], *, level: str = "info") -> None:
        events.append({**payload, "level": level})

    monkeypatch.setattr(chunking_mod, "log_event", fake_log_event)
    return events


# ---------------------------------------------------------------------
# Periodic timer
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_timer_flushes_once_min_duration_met():
    rec = Recorder()
    agg = rec.make(interval_ms=20, min_duration_ms=40, overlap_ms=0)

    for v in range(3):
        agg.push(make_frame(v))

    await asyncio.wait_for(rec.got_result.wait(), timeout=1.0)
    agg.close()

    assert rec.results == [960]
    assert rec.chunks[0].duration_ms == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_timer_waits_for_min_duration():
    rec = Recorder()
    agg = rec.make(interval_ms=10, min_duration_ms=700, overlap_ms=0)

    agg.push(make_frame(1))
    await asyncio.sleep(0.08)

    assert agg.chunks_started == 0
    assert agg.buffered_ms == pytest.approx(20.0)
    agg.close()


@pytest.mark.asyncio
async def test_timer_disabled_when_interval_not_positive():
    rec = Recorder()
    agg = rec.make(interval_ms=0, min_duration_ms=0, overlap_ms=0)

    agg.push(make_frame(1))
    await asyncio.sleep(0.05)

    assert agg.chunks_started == 0
    agg.close()


@pytest.mark.asyncio
async def test_failed_chunk_does_not_stop_timer():
    rec = Recorder()
    rec.fail_next = True
    agg = rec.make(interval_ms=10, min_duration_ms=0, overlap_ms=0)

    agg.push(make_frame(1))
    await asyncio.wait_for(rec.got_error.wait(), timeout=1.0)

    agg.push(make_frame(2))
    await asyncio.wait_for(rec.got_result.wait(), timeout=1.0)
    agg.close()

    assert isinstance(rec.errors[0], ProviderError)
    assert rec.results == [320]
    assert not agg.in_flight


# ---------------------------------------------------------------------
# Chunk contents
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_overlap_prefixes_next_chunk():
    rec = Recorder()
    agg = rec.make(interval_ms=0, overlap_ms=10)

    agg.push(make_frame(1))
    task = agg.force_flush()
    assert task is not None
    await task

    agg.push(make_frame(2))
    task = agg.force_flush()
    assert task is not None
    await task

    first, second = rec.chunks
    assert first.pcm.tolist() == [1] * 320
    # 10ms of overlap at 16 kHz == the last 160 samples of the previous chunk
    assert second.pcm.tolist() == [1] * 160 + [2] * 320


@pytest.mark.asyncio
async def test_force_flush_ignores_min_duration():
    rec = Recorder()
    agg = rec.make(interval_ms=0, min_duration_ms=10_000, overlap_ms=0)

    agg.push(make_frame(1))
    task = agg.force_flush()
    assert task is not None
    await task

    assert rec.results == [320]


@pytest.mark.asyncio
async def test_force_flush_with_nothing_buffered_is_noop():
    rec = Recorder()
    agg = rec.make(interval_ms=0)

    assert agg.force_flush() is None
    assert agg.chunks_started == 0


@pytest.mark.asyncio
async def test_frames_during_flush_land_in_next_chunk():
    rec = Recorder()
    rec.gate = asyncio.Event()
    agg = rec.make(interval_ms=0, overlap_ms=0)

    agg.push(make_frame(1))
    agg.force_flush()
    await asyncio.sleep(0)
    assert agg.in_flight == 1

    agg.push(make_frame(2))
    deferred = agg.force_flush()
    agg.push(make_frame(3))
    assert agg.force_flush() is deferred
    assert deferred is not None and not deferred.done()
    assert agg.pending_flush

    rec.gate.set()
    await asyncio.wait_for(deferred, timeout=1.0)
    assert agg.chunks_started == 2
    await agg.wait_idle()

    assert [c.pcm.tolist() for c in rec.chunks] == [
        [1] * 320,
        [2] * 320 + [3] * 320,
    ]
    # Deferred requests coalesce into one follow-up flush
    assert agg.chunks_started == 2
    assert not agg.pending_flush


@pytest.mark.asyncio
async def test_in_flight_never_exceeds_limit():
    rec = Recorder()
    rec.gate = asyncio.Event()
    agg = rec.make(interval_ms=0, overlap_ms=0, max_in_flight=2)

    for v in range(4):
        agg.push(make_frame(v))
        agg.force_flush()

    await asyncio.sleep(0)
    assert agg.in_flight == 2

    rec.gate.set()
    await agg.wait_idle()
    assert agg.in_flight == 0
    assert len(rec.results) == 3


# ---------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_close_with_flush_sends_remaining_audio():
    rec = Recorder()
    agg = rec.make(interval_ms=0, overlap_ms=0)

    agg.push(make_frame(1))
    agg.close(flush_remaining=True)
    await agg.wait_idle()

    assert rec.results == [320]
    assert agg.closed


@pytest.mark.asyncio
async def test_close_defers_final_flush_until_slot_frees():
    rec = Recorder()
    rec.gate = asyncio.Event()
    agg = rec.make(interval_ms=0, overlap_ms=0)

    agg.push(make_frame(1))
    agg.force_flush()
    await asyncio.sleep(0)

    agg.push(make_frame(2))
    agg.close(flush_remaining=True)
    assert agg.final_flush_pending

    agg.push(make_frame(3))  # ignored after close

    rec.gate.set()
    await agg.wait_idle()

    assert [c.pcm.tolist() for c in rec.chunks] == [[1] * 320, [2] * 320]
    assert not agg.final_flush_pending
    assert agg.buffered_ms == 0.0


@pytest.mark.asyncio
async def test_close_without_flush_discards_audio():
    rec = Recorder()
    agg = rec.make(interval_ms=0)

    agg.push(make_frame(1))
    agg.close()
    await agg.wait_idle()

    assert not rec.chunks
    assert agg.buffered_ms == 0.0
    assert agg.force_flush() is None


@pytest.mark.asyncio
async def test_close_settles_deferred_force_flush():
    rec = Recorder()
    rec.gate = asyncio.Event()
    agg = rec.make(interval_ms=0, overlap_ms=0)

    agg.push(make_frame(1))
    agg.force_flush()
    await asyncio.sleep(0)
    agg.push(make_frame(2))
    deferred = agg.force_flush()
    assert deferred is not None

    agg.close()
    assert deferred.done()

    rec.gate.set()
    await agg.wait_idle()
    assert agg.chunks_started == 1


# ---------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_timeout_reports_error_and_frees_slot(emitted: list[dict[str, Any]]):
    rec = Recorder()
    rec.gate = asyncio.Event()
    agg = rec.make(interval_ms=0, overlap_ms=0, timeout_ms=20)

    agg.push(make_frame(1))
    task = agg.force_flush()
    assert task is not None
    await task

    assert isinstance(rec.errors[0], OperationTimeoutError)
    assert agg.in_flight == 0
    assert any(
        e["event_type"] == "CHUNK_FLUSH_FAILED" and e["level"] == "error"
        for e in emitted
    )

    rec.gate.set()
    agg.push(make_frame(2))
    task = agg.force_flush()
    assert task is not None
    await task
    assert rec.results == [320]


@pytest.mark.asyncio
async def test_raising_result_callback_is_contained(emitted: list[dict[str, Any]]):
    seen: list[Exception] = []

    async def on_flush(chunk: PcmChunk, token: CancelToken) -> int:
        return chunk.samples

    def on_result(_: int) -> None:
        raise RuntimeError("subscriber bug")

    agg: ChunkedAggregator[int] = ChunkedAggregator(
        on_flush=on_flush,
        on_result=on_result,
        on_error=seen.append,
        options=ChunkingOptions(interval_ms=0),
    )
    agg.push(make_frame(1))
    task = agg.force_flush()
    assert task is not None
    await task

    assert not seen
    assert any(e["event_type"] == "CHUNK_CALLBACK_FAILED" for e in emitted)


# ---------------------------------------------------------------------
# Format lane / options
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_mismatched_format_dropped(emitted: list[dict[str, Any]]):
    rec = Recorder()
    agg = rec.make(interval_ms=0, overlap_ms=0)

    agg.push(make_frame(1))
    agg.push(make_frame(2, sample_rate=48_000))

    assert agg.frames_dropped == 1
    assert agg.buffered_ms == pytest.approx(20.0)
    warn = [e for e in emitted if e["event_type"] == "CHUNK_FRAME_FORMAT_MISMATCH"]
    assert warn[0]["level"] == "warn"
    assert warn[0]["sample_rate"] == 48_000
    agg.close()


def test_max_in_flight_clamped(emitted: list[dict[str, Any]]):
    rec_events: list[Any] = []

    async def on_flush(chunk: PcmChunk, token: CancelToken) -> None:
        return None

    agg: ChunkedAggregator[None] = ChunkedAggregator(
        on_flush=on_flush,
        on_result=rec_events.append,
        on_error=rec_events.append,
        options=ChunkingOptions(max_in_flight=0),
    )

    assert agg.max_in_flight == 1
    assert emitted[0]["event_type"] == "CHUNK_MAX_IN_FLIGHT_CLAMPED"


def test_default_interval():
    async def on_flush(chunk: PcmChunk, token: CancelToken) -> None:
        return None

    agg: ChunkedAggregator[None] = ChunkedAggregator(
        on_flush=on_flush,
        on_result=lambda _: None,
        on_error=lambda _: None,
    )

    assert agg.interval_ms == 3_000
