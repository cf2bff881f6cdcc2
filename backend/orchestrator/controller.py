"""
Transcription controller for a single audio source.

Responsibilities:
- Own connection lifecycle, status, and retry state
- Route frames to the preconnect buffer, the persistent stream, or the
  chunked aggregator, depending on readiness and transport
- Turn upstream segment ends into cooldown-gated endpoint requests
- Fan out partials, transcripts, errors and status changes to subscribers

Non-responsibilities:
- No speech / segment detection (the frame source decides)
- No transcript interpretation
- No provider wire formats (adapters own those)

Concurrency model:
- Single asyncio event loop; every state mutation happens between awaits
- At most one connect attempt is in flight; concurrent connect() callers
  share its outcome through a single future
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from adapters.asr.base import (
    BatchOptions,
    TranscriptionProvider,
    TranscriptionStream,
    TranscriptResult,
)
from audio.frames import AudioFrame
from audio.pcm import PcmChunk
from audio.preconnect import PreconnectBuffer
from audio.source import FrameSource, SegmentBoundary
from constants import CHUNK_SEGMENT_ONLY_INTERVAL_MS, FORCE_FLUSH_COOLDOWN_MS
from observability.logger import log_event
from orchestrator.cancellation import CancelToken
from orchestrator.chunking import ChunkedAggregator, ChunkingOptions
from orchestrator.enums.status import ControllerStatus
from orchestrator.enums.transport import SilencePolicy, Transport
from orchestrator.retry import RetryConfig, compute_backoff, should_retry
from orchestrator.subscriptions import Subscribers, Unsubscribe


def _monotonic_ms() -> float:
    return time.monotonic_ns() / 1_000_000


# ---------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TranscriptionOptions:
    """
    Immutable controller configuration.

    flush_on_segment_end:
        Upstream segment ends trigger a forced flush (HTTP) or a forced
        endpoint (persistent stream, when the provider supports it).
        In HTTP mode this also selects segment-only chunking (no periodic
        timer) unless chunking.interval_ms is given, and restricts the
        aggregator to speech frames once connected.

    preconnect_buffer_ms:
        None selects the default budget; values are clamped into range.
    """
    transport: Transport = Transport.AUTO
    flush_on_segment_end: bool = False
    preconnect_buffer_ms: float | None = None
    silence_policy: SilencePolicy = SilencePolicy.KEEP
    chunking: ChunkingOptions = ChunkingOptions()
    retry: RetryConfig = RetryConfig()
    batch: BatchOptions = BatchOptions()


# ---------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------

class TranscriptionController:
    """
    Delivers live audio to one injected transcription provider.

    Lifecycle:
    1. connect() subscribes to the frame source; frames buffer until ready
    2. the transport comes up (with retries); buffered frames drain first
    3. live frames flow to the stream / aggregator
    4. disconnect() unsubscribes, flushes remaining HTTP audio, closes
    """

    def __init__(
        self,
        *,
        provider: TranscriptionProvider,
        frame_source: FrameSource | None = None,
        options: TranscriptionOptions | None = None,
        now_ms: Callable[[], float] | None = None,
    ) -> None:
        self._provider = provider
        self._source = frame_source
        self._options = options or TranscriptionOptions()
        self._now_ms = now_ms or _monotonic_ms

        self._preconnect = PreconnectBuffer(self._options.preconnect_buffer_ms)

        # Observable state
        self._status = ControllerStatus.IDLE
        self._error: Exception | None = None
        self._connected = False
        self._transport: Transport | None = None

        # Retry state
        self._attempts = 0
        self._connect_future: asyncio.Future[None] | None = None
        self._connect_token: CancelToken | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._generation = 0

        # Transports
        self._stream: TranscriptionStream | None = None
        self._stream_unsubs: list[Unsubscribe] = []
        self._stream_needs_refresh = False
        self._aggregator: ChunkedAggregator[TranscriptResult] | None = None

        # Frame source wiring
        self._frame_unsub: Unsubscribe | None = None
        self._vad_unsub: Unsubscribe | None = None
        self._segment_unsub: Unsubscribe | None = None
        self._speech_active = False
        self._last_forced_ms: float | None = None

        self._background: set[asyncio.Task[Any]] = set()

        self._partials: Subscribers[TranscriptResult] = Subscribers("controller.partial")
        self._transcripts: Subscribers[TranscriptResult] = Subscribers("controller.transcript")
        self._errors: Subscribers[Exception] = Subscribers("controller.error")
        self._statuses: Subscribers[ControllerStatus] = Subscribers("controller.status")

        self._provider_unsub: Unsubscribe | None = provider.on_update(self._on_provider_update)

        # Buffer from construction so audio published before connect() is kept.
        self._subscribe_frames(speech_only=False)

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def status(self) -> ControllerStatus:
        return self._status

    @property
    def error(self) -> Exception | None:
        return self._error

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def transport(self) -> Transport:
        """Transport in use, or the one the next connect() would pick."""
        return self._transport or self._resolve_transport()

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def preconnect(self) -> PreconnectBuffer:
        return self._preconnect

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_partial(self, handler: Callable[[TranscriptResult], None]) -> Unsubscribe:
        return self._partials.subscribe(handler)

    def on_transcript(self, handler: Callable[[TranscriptResult], None]) -> Unsubscribe:
        return self._transcripts.subscribe(handler)

    def on_error(self, handler: Callable[[Exception], None]) -> Unsubscribe:
        return self._errors.subscribe(handler)

    def on_status_change(self, handler: Callable[[ControllerStatus], None]) -> Unsubscribe:
        return self._statuses.subscribe(handler)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self, token: CancelToken | None = None) -> None:
        """
        Bring the transport up.

        Concurrent callers (and callers arriving during a retry backoff)
        await the same attempt. Returns once connected or once a terminal
        failure has been recorded; inspect `status` / `error` afterwards.
        """
        if self._connect_future is not None:
            await asyncio.shield(self._connect_future)
            return
        if self._connected:
            return

        self._connect_future = asyncio.get_running_loop().create_future()
        future = self._connect_future
        self._connect_token = token
        self._error = None
        self._attempts = 0
        self._transport = self._resolve_transport()

        self._subscribe_frames(speech_only=False)
        self._subscribe_vad()
        self._subscribe_segments()

        log_event({
            "event_type": "TRANSCRIPTION_CONNECT_REQUESTED",
            "provider_id": self._provider.provider_id,
            "transport": self._transport.value,
        })

        await self._attempt_connect()
        await asyncio.shield(future)

    async def disconnect(self) -> None:
        """
        Tear down: unsubscribe from the source, cancel retries, flush any
        accumulated HTTP audio, close the stream. Leaves status DISCONNECTED.
        """
        self._generation += 1
        self._unsubscribe_source()
        self._cancel_retry()
        self._settle_connect()
        self._preconnect.clear()

        aggregator = self._aggregator
        self._aggregator = None
        if aggregator is not None:
            aggregator.close(flush_remaining=True)
            self._spawn(aggregator.wait_idle())

        stream = self._stream
        try:
            if stream is not None:
                await stream.disconnect()
        finally:
            self._unwire_stream()
            self._stream = None
            self._connected = False
            self._set_status(ControllerStatus.DISCONNECTED)
            log_event({
                "event_type": "TRANSCRIPTION_DISCONNECTED",
                "provider_id": self._provider.provider_id,
            })

    async def shutdown(self) -> None:
        """disconnect() plus release of the provider subscription and background work."""
        await self.disconnect()
        if self._provider_unsub is not None:
            self._provider_unsub()
            self._provider_unsub = None
        for task in tuple(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*tuple(self._background), return_exceptions=True)

    async def force_endpoint(self) -> None:
        """
        Finalize the current utterance now.

        HTTP: force-flush the aggregator and wait for that flush (or for the
        deferred follow-up flush when max_in_flight is saturated).
        Persistent stream: delegate to the stream.
        """
        if self._transport is Transport.HTTP:
            aggregator = self._aggregator
            if aggregator is None:
                return
            task = aggregator.force_flush()
            if task is not None:
                await asyncio.shield(task)
            return

        stream = self._stream
        if stream is None or not self._connected:
            return
        await stream.force_endpoint()

    def clear(self) -> None:
        """Drop any audio waiting in the preconnect buffer."""
        self._preconnect.clear()

    async def update_provider(self, options: Mapping[str, Any]) -> None:
        """Forward new options to the provider (see _on_provider_update)."""
        await self._provider.update(options)

    async def wait_idle(self) -> None:
        """Wait for in-flight chunk flushes and background endpoint requests."""
        while self._background:
            await asyncio.gather(*tuple(self._background), return_exceptions=True)
        if self._aggregator is not None:
            await self._aggregator.wait_idle()

    # ------------------------------------------------------------------
    # Connect / retry
    # ------------------------------------------------------------------

    async def _attempt_connect(self) -> None:
        self._retry_handle = None
        generation = self._generation
        self._set_status(ControllerStatus.CONNECTING)
        self._attempts += 1

        if self._transport is Transport.HTTP:
            self._ensure_aggregator()
            self._mark_connected()
            for frame in self._preconnect.drain():
                self._route_live(frame)
            if self._options.flush_on_segment_end:
                self._subscribe_frames(speech_only=True)
            self._set_status(ControllerStatus.CONNECTED)
            self._settle_connect()
            return

        try:
            stream = self._ensure_stream()
            await stream.connect(self._connect_token)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # pylint: disable=broad-exception-caught
            if generation == self._generation:
                self._handle_failure(e)
            return

        if generation != self._generation:
            # disconnect() ran while the stream was connecting
            return

        self._mark_connected()
        # Buffered audio predates VAD state; the silence policy applies to live frames only.
        for frame in self._preconnect.drain():
            stream.send(frame)
        self._set_status(ControllerStatus.CONNECTED)
        self._settle_connect()

    def _mark_connected(self) -> None:
        self._connected = True
        self._attempts = 0
        log_event({
            "event_type": "TRANSCRIPTION_CONNECTED",
            "provider_id": self._provider.provider_id,
            "transport": self.transport.value,
            "preconnect": self._preconnect.snapshot(),
        })

    def _handle_failure(self, error: Exception) -> None:
        self._error = error
        self._connected = False
        self._errors.emit(error)

        retry = self._options.retry
        if should_retry(self._attempts, retry, error):
            delay_ms = compute_backoff(self._attempts, retry, error)
            log_event({
                "event_type": "TRANSCRIPTION_RETRY_SCHEDULED",
                "provider_id": self._provider.provider_id,
                "attempt": self._attempts,
                "delay_ms": delay_ms,
                "exception": type(error).__name__,
                "message": str(error),
            }, level="warn")

            self._discard_stream()
            if self._connect_future is None:
                self._connect_future = asyncio.get_running_loop().create_future()
            self._set_status(ControllerStatus.CONNECTING)
            self._retry_handle = asyncio.get_running_loop().call_later(
                delay_ms / 1000.0, self._fire_retry
            )
            return

        log_event({
            "event_type": "TRANSCRIPTION_FAILED",
            "provider_id": self._provider.provider_id,
            "attempts": self._attempts,
            "exception": type(error).__name__,
            "message": str(error),
        }, level="error")
        self._set_status(ControllerStatus.ERROR)
        self._settle_connect()

    def _fire_retry(self) -> None:
        self._retry_handle = None
        self._retry_task = asyncio.get_running_loop().create_task(self._attempt_connect())

    def _cancel_retry(self) -> None:
        handle = self._retry_handle
        self._retry_handle = None
        if handle is not None:
            handle.cancel()

        task = self._retry_task
        self._retry_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _settle_connect(self) -> None:
        future = self._connect_future
        self._connect_future = None
        if future is not None and not future.done():
            future.set_result(None)

    def _resolve_transport(self) -> Transport:
        requested = self._options.transport
        if requested is not Transport.AUTO:
            return requested
        transports = self._provider.capabilities.transports
        if transports.websocket:
            return Transport.WEBSOCKET
        if transports.http:
            return Transport.HTTP
        return Transport.WEBSOCKET

    # ------------------------------------------------------------------
    # Persistent stream
    # ------------------------------------------------------------------

    def _ensure_stream(self) -> TranscriptionStream:
        if self._stream is not None and not self._stream_needs_refresh:
            return self._stream

        self._discard_stream()
        stream = self._provider.stream()
        self._stream = stream
        self._stream_needs_refresh = False
        self._stream_unsubs = [
            stream.on_transcript(self._transcripts.emit),
            stream.on_partial(self._partials.emit),
            stream.on_error(self._on_stream_error),
            stream.on_status_change(self._on_stream_status),
        ]
        return stream

    def _unwire_stream(self) -> None:
        for unsub in self._stream_unsubs:
            unsub()
        self._stream_unsubs = []

    def _discard_stream(self) -> None:
        """Detach the current stream (if any) and close it in the background."""
        stream = self._stream
        self._unwire_stream()
        self._stream = None
        if stream is not None:
            self._spawn(self._close_stream(stream))

    async def _close_stream(self, stream: TranscriptionStream) -> None:
        try:
            await stream.disconnect()
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "TRANSCRIPTION_STREAM_CLOSE_FAILED",
                "provider_id": self._provider.provider_id,
                "exception": type(e).__name__,
                "message": str(e),
            }, level="warn")

    def _on_stream_error(self, error: Exception) -> None:
        if not self._connected:
            # Errors during a connect attempt surface through connect() itself
            self._error = error
            self._errors.emit(error)
            return
        self._attempts = 0
        self._handle_failure(error)

    def _on_stream_status(self, status: ControllerStatus) -> None:
        if self._connected:
            self._set_status(status)

    def _send_to_stream(self, frame: AudioFrame) -> None:
        stream = self._stream
        if stream is None:
            return

        policy = self._options.silence_policy
        if policy is SilencePolicy.KEEP or self._speech_active:
            stream.send(frame)
        elif policy is SilencePolicy.MUTE:
            stream.send(frame.muted())

    # ------------------------------------------------------------------
    # Chunked (HTTP) transport
    # ------------------------------------------------------------------

    def _ensure_aggregator(self) -> ChunkedAggregator[TranscriptResult]:
        if self._aggregator is not None and not self._aggregator.closed:
            return self._aggregator

        chunking = self._options.chunking
        if chunking.interval_ms is None and self._options.flush_on_segment_end:
            chunking = ChunkingOptions(
                interval_ms=CHUNK_SEGMENT_ONLY_INTERVAL_MS,
                min_duration_ms=chunking.min_duration_ms,
                overlap_ms=chunking.overlap_ms,
                max_in_flight=chunking.max_in_flight,
                timeout_ms=chunking.timeout_ms,
            )
        if (
            chunking.interval_ms is not None
            and chunking.interval_ms <= 0
            and not self._options.flush_on_segment_end
        ):
            log_event({
                "event_type": "CHUNK_TIMER_DISABLED",
                "message": "interval_ms <= 0 without flush_on_segment_end; "
                           "audio only flushes on force_endpoint() or disconnect()",
                "interval_ms": chunking.interval_ms,
            }, level="warn")

        self._aggregator = ChunkedAggregator(
            on_flush=self._transcribe_chunk,
            on_result=self._transcripts.emit,
            on_error=self._on_chunk_error,
            options=chunking,
        )
        return self._aggregator

    async def _transcribe_chunk(self, chunk: PcmChunk, token: CancelToken) -> TranscriptResult:
        return await self._provider.transcribe(chunk.to_wav(), self._options.batch, token)

    def _on_chunk_error(self, error: Exception) -> None:
        # Chunk-local: reported, never a status change
        self._error = error
        self._errors.emit(error)

    # ------------------------------------------------------------------
    # Frame source wiring
    # ------------------------------------------------------------------

    def _subscribe_frames(self, *, speech_only: bool) -> None:
        if self._frame_unsub is not None:
            self._frame_unsub()
            self._frame_unsub = None
        if self._source is None:
            return
        if speech_only:
            self._frame_unsub = self._source.subscribe_speech_frames(self._on_frame)
        else:
            self._frame_unsub = self._source.subscribe_frames(self._on_frame)

    def _subscribe_vad(self) -> None:
        if self._vad_unsub is not None:
            self._vad_unsub()
            self._vad_unsub = None
        self._speech_active = False
        if self._source is None:
            return
        if self._transport is Transport.HTTP:
            return
        if self._options.silence_policy is SilencePolicy.KEEP:
            return
        self._vad_unsub = self._source.on_vad(self._on_vad)

    def _subscribe_segments(self) -> None:
        if self._segment_unsub is not None:
            self._segment_unsub()
            self._segment_unsub = None
        self._last_forced_ms = None
        if self._source is None or not self._options.flush_on_segment_end:
            return
        self._segment_unsub = self._source.on_segment(self._on_segment)

    def _unsubscribe_source(self) -> None:
        for unsub in (self._frame_unsub, self._vad_unsub, self._segment_unsub):
            if unsub is not None:
                unsub()
        self._frame_unsub = None
        self._vad_unsub = None
        self._segment_unsub = None

    def _on_frame(self, frame: AudioFrame) -> None:
        if not self._connected:
            self._preconnect.push(frame)
            return
        self._route_live(frame)

    def _route_live(self, frame: AudioFrame) -> None:
        if self._transport is Transport.HTTP:
            if self._aggregator is not None:
                self._aggregator.push(frame)
            return
        self._send_to_stream(frame)

    def _on_vad(self, speech: bool) -> None:
        self._speech_active = speech

    def _on_segment(self, segment: SegmentBoundary) -> None:
        if not self._connected:
            return

        if self._transport is not Transport.HTTP:
            if self._stream is None or not self._provider.capabilities.force_endpoint:
                return

        now = self._now_ms()
        if self._last_forced_ms is not None and now - self._last_forced_ms < FORCE_FLUSH_COOLDOWN_MS:
            log_event({
                "event_type": "SEGMENT_FORCE_SUPPRESSED",
                "since_last_ms": now - self._last_forced_ms,
                "segment_end_ms": segment.end_ms,
            }, level="debug")
            return
        self._last_forced_ms = now
        self._spawn(self._force_from_segment())

    async def _force_from_segment(self) -> None:
        try:
            await self.force_endpoint()
        except Exception as e:  # pylint: disable=broad-exception-caught
            self._error = e
            self._errors.emit(e)

    # ------------------------------------------------------------------
    # Provider updates
    # ------------------------------------------------------------------

    def _on_provider_update(self, options: Mapping[str, Any]) -> None:
        self._stream_needs_refresh = True
        if not self._connected:
            self._discard_stream()
            self._stream_needs_refresh = False
            aggregator = self._aggregator
            self._aggregator = None
            if aggregator is not None:
                aggregator.close(flush_remaining=False)
            return

        log_event({
            "event_type": "PROVIDER_UPDATE_DEFERRED",
            "provider_id": self._provider.provider_id,
            "keys": sorted(options.keys()),
            "message": "applies on next reconnect",
        })

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_status(self, status: ControllerStatus) -> None:
        if status == self._status:
            return
        previous = self._status
        self._status = status
        log_event({
            "event_type": "TRANSCRIPTION_STATUS_CHANGED",
            "provider_id": self._provider.provider_id,
            "from": previous.value,
            "to": status.value,
        }, level="debug")
        self._statuses.emit(status)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
