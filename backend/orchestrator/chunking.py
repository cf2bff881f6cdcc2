"""
Chunked aggregation of live audio for batch (HTTP) transcription.

Turns a continuous frame stream into overlapping, time-bounded chunks and
hands each one to an async flush callback, with bounded concurrency and a
per-chunk deadline.

IMPORTANT CONTRACT WITH CALLERS:

- The accumulator is emptied synchronously when a flush starts, before the
  flush callback gets a chance to suspend. Frames pushed while a flush is
  in flight always land in a later chunk.
- A chunk failure (callback error, timeout, cancellation) is reported to
  `on_error` and logged. It never escapes, never stops the periodic timer,
  and never closes the aggregator.
- The first frame pushed locks the (sample_rate, channels) lane. Frames
  in any other format are dropped with a warning.
- force_flush()/close() must be called from code running on the event loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import numpy as np

from audio.frames import AudioFrame
from audio.pcm import PcmChunk, concat_pcm, overlap_samples, tail
from constants import (
    CHUNK_INTERVAL_MS,
    CHUNK_MAX_IN_FLIGHT,
    CHUNK_MIN_DURATION_MS,
    CHUNK_OVERLAP_MS,
    CHUNK_TIMEOUT_MS,
)
from observability.logger import log_event
from orchestrator.cancellation import CancelToken, arm_timeout, run_cancellable

R = TypeVar("R")

FlushFn = Callable[[PcmChunk, CancelToken], Awaitable[R]]


# =============================================================================
# Options
# =============================================================================

@dataclass(frozen=True)
class ChunkingOptions:
    """
    Aggregator tuning.

    interval_ms:
        Periodic flush interval. None selects the default; 0 or less disables
        the timer (flushes then only happen via force_flush/close).
    """
    interval_ms: float | None = None
    min_duration_ms: float = CHUNK_MIN_DURATION_MS
    overlap_ms: float = CHUNK_OVERLAP_MS
    max_in_flight: int = CHUNK_MAX_IN_FLIGHT
    timeout_ms: float = CHUNK_TIMEOUT_MS


# =============================================================================
# Aggregator
# =============================================================================

class ChunkedAggregator(Generic[R]):
    """
    Accumulates frames and flushes them as overlapping chunks.

    Lifecycle:
    1. push() frames (timer starts lazily on the first push)
    2. timer ticks / force_flush() start flushes, up to max_in_flight at once
    3. close(flush_remaining) stops the timer; optionally flushes what is left
    """

    def __init__(
        self,
        *,
        on_flush: FlushFn[R],
        on_result: Callable[[R], None],
        on_error: Callable[[Exception], None],
        options: ChunkingOptions | None = None,
    ) -> None:
        opts = options or ChunkingOptions()

        self._on_flush = on_flush
        self._on_result = on_result
        self._on_error = on_error

        self._interval_ms: float = (
            CHUNK_INTERVAL_MS if opts.interval_ms is None else opts.interval_ms
        )
        self._min_duration_ms: float = opts.min_duration_ms
        self._overlap_ms: float = max(0.0, opts.overlap_ms)
        self._timeout_ms: float = opts.timeout_ms

        max_in_flight = opts.max_in_flight
        if max_in_flight < 1:
            log_event(
                {
                    "event_type": "CHUNK_MAX_IN_FLIGHT_CLAMPED",
                    "provided": max_in_flight,
                    "clamped_to": 1,
                },
                level="warn",
            )
            max_in_flight = 1
        self._max_in_flight: int = max_in_flight

        self._frames: list[AudioFrame] = []
        self._duration_ms: float = 0.0
        self._tail: np.ndarray = np.zeros(0, dtype=np.int16)
        self._lane: tuple[int, int] | None = None

        self._in_flight: int = 0
        self._pending_flush: bool = False
        self._final_flush_pending: bool = False
        self._deferred: asyncio.Future[None] | None = None
        self._closed: bool = False

        self._timer_task: asyncio.Task[None] | None = None
        self._flush_tasks: set[asyncio.Task[None]] = set()

        self.chunks_started: int = 0
        self.frames_dropped: int = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push(self, frame: AudioFrame) -> None:
        """Accumulate a frame. No-op once closed."""
        if self._closed:
            return

        if self._lane is None:
            self._lane = frame.lane
        elif frame.lane != self._lane:
            self.frames_dropped += 1
            log_event(
                {
                    "event_type": "CHUNK_FRAME_FORMAT_MISMATCH",
                    "expected_sample_rate": self._lane[0],
                    "expected_channels": self._lane[1],
                    "sample_rate": frame.sample_rate,
                    "channels": frame.channels,
                },
                level="warn",
            )
            return

        self._frames.append(frame)
        self._duration_ms += frame.duration_ms
        self._ensure_timer()

    def force_flush(self) -> asyncio.Future[None] | None:
        """
        Flush accumulated audio now, ignoring min duration.

        Returns the flush task, or None when there is nothing to flush.
        When max_in_flight is saturated the flush is deferred and a future
        is returned that settles once the deferred flush completes; repeated
        deferrals coalesce into one follow-up flush and share that future.
        """
        if self._closed or not self._frames:
            return None
        if self._in_flight >= self._max_in_flight:
            self._pending_flush = True
            if self._deferred is None:
                self._deferred = asyncio.get_running_loop().create_future()
            return self._deferred
        return self._start_flush(forced=True)

    def close(self, flush_remaining: bool = False) -> None:
        """
        Stop accepting audio and stop the timer.

        flush_remaining=True sends whatever is accumulated: immediately if a
        flush slot is free, otherwise exactly once after the in-flight flush
        settles. Without it, accumulated audio is discarded.
        """
        if self._closed:
            return

        if flush_remaining and self._frames:
            if self._in_flight >= self._max_in_flight:
                self._final_flush_pending = True
            else:
                self._start_flush(forced=True)

        self._closed = True
        self._pending_flush = False
        self._stop_timer()

        if not self._final_flush_pending:
            self._settle_deferred(None)
            self._reset_buffers()

    async def wait_idle(self) -> None:
        """Wait until no flush is in flight (including deferred final flushes)."""
        while self._flush_tasks:
            await asyncio.gather(*tuple(self._flush_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    @property
    def interval_ms(self) -> float:
        return self._interval_ms

    @property
    def buffered_ms(self) -> float:
        return self._duration_ms

    @property
    def pending_flush(self) -> bool:
        return self._pending_flush

    @property
    def final_flush_pending(self) -> bool:
        return self._final_flush_pending

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _ensure_timer(self) -> None:
        if self._interval_ms <= 0 or self._closed:
            return
        if self._timer_task is not None and not self._timer_task.done():
            return
        self._timer_task = asyncio.get_running_loop().create_task(self._timer_loop())

    def _stop_timer(self) -> None:
        task = self._timer_task
        self._timer_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _timer_loop(self) -> None:
        interval_s = self._interval_ms / 1000.0
        while not self._closed:
            await asyncio.sleep(interval_s)
            self._on_tick()

    def _on_tick(self) -> None:
        if self._closed or not self._frames:
            return
        if self._duration_ms < self._min_duration_ms:
            return
        if self._in_flight >= self._max_in_flight:
            return
        self._start_flush(forced=False)

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def _start_flush(
        self,
        *,
        forced: bool,
        ignore_limits: bool = False,
        ignore_closed: bool = False,
    ) -> asyncio.Task[None] | None:
        if self._closed and not ignore_closed:
            return None
        if not ignore_limits and self._in_flight >= self._max_in_flight:
            return None
        if not self._frames:
            return None

        chunk = self._take_chunk()
        self._in_flight += 1
        self.chunks_started += 1

        log_event(
            {
                "event_type": "CHUNK_FLUSH_STARTED",
                "forced": forced,
                "duration_ms": round(chunk.duration_ms, 3),
                "in_flight": self._in_flight,
            },
            level="debug",
        )

        task = asyncio.get_running_loop().create_task(self._run_flush(chunk))
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)
        return task

    def _take_chunk(self) -> PcmChunk:
        assert self._lane is not None
        sample_rate, channels = self._lane

        n_overlap = overlap_samples(self._overlap_ms, sample_rate, channels)
        pcm = concat_pcm(self._frames, self._tail if n_overlap > 0 else None)
        self._tail = tail(pcm, n_overlap)

        self._frames = []
        self._duration_ms = 0.0
        return PcmChunk(pcm=pcm, sample_rate=sample_rate, channels=channels)

    async def _run_flush(self, chunk: PcmChunk) -> None:
        token = CancelToken()
        deadline = (
            arm_timeout(token, self._timeout_ms, operation="flush")
            if self._timeout_ms > 0
            else None
        )
        try:
            result = await run_cancellable(self._on_flush(chunk, token), token)
        except asyncio.CancelledError:
            self._in_flight -= 1
            self._settle_deferred(None)
            raise
        except Exception as e:  # pylint: disable=broad-exception-caught
            self._in_flight -= 1
            log_event(
                {
                    "event_type": "CHUNK_FLUSH_FAILED",
                    "exception": type(e).__name__,
                    "message": str(e),
                    "duration_ms": round(chunk.duration_ms, 3),
                },
                level="error",
            )
            self._deliver(self._on_error, e)
        else:
            self._in_flight -= 1
            self._deliver(self._on_result, result)
        finally:
            if deadline is not None:
                deadline.cancel()

        self._after_settle()

    def _after_settle(self) -> None:
        if self._final_flush_pending:
            self._final_flush_pending = False
            task = None
            if self._frames:
                task = self._start_flush(forced=True, ignore_limits=True, ignore_closed=True)
            self._settle_deferred(task)
            self._reset_buffers()
            return

        if not self._pending_flush:
            return
        if self._closed or not self._frames:
            self._pending_flush = False
            self._settle_deferred(None)
            return
        if self._in_flight < self._max_in_flight:
            self._pending_flush = False
            self._settle_deferred(self._start_flush(forced=True))

    def _settle_deferred(self, task: asyncio.Task[None] | None) -> None:
        """Resolve the deferred force_flush future now, or when `task` ends."""
        future = self._deferred
        self._deferred = None
        if future is None or future.done():
            return
        if task is None:
            future.set_result(None)
            return

        def _resolve(_: asyncio.Task[None]) -> None:
            if not future.done():
                future.set_result(None)

        task.add_done_callback(_resolve)

    def _deliver(self, callback: Callable[[Any], None], value: Any) -> None:
        try:
            callback(value)
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event(
                {
                    "event_type": "CHUNK_CALLBACK_FAILED",
                    "exception": type(e).__name__,
                    "message": str(e),
                },
                level="error",
            )

    def _reset_buffers(self) -> None:
        self._frames = []
        self._duration_ms = 0.0
        self._tail = np.zeros(0, dtype=np.int16)
