"""
Transcription provider contract.

This module defines the *interface only*: no buffering, retries, timers,
or orchestration decisions live here.

Key invariants:
- A provider advertises which transports it supports via capabilities.
- A persistent stream emits transcripts, partials, errors and status
  changes through subscriptions; it never calls back into the controller.
- Errors crossing this boundary are members of adapters.asr.errors.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from adapters.asr.errors import ValidationError
from audio.frames import AudioFrame
from orchestrator.cancellation import CancelToken
from orchestrator.enums.status import ControllerStatus
from orchestrator.subscriptions import Subscribers, Unsubscribe, noop_unsubscribe


# =============================================================================
# Result types
# =============================================================================

@dataclass(frozen=True)
class TranscriptWord:
    """One recognized word with timing relative to the stream/chunk start."""
    word: str
    start_ms: int | None = None
    end_ms: int | None = None
    confidence: float | None = None


@dataclass(frozen=True)
class TranscriptResult:
    """
    Provider output for one utterance (final) or hypothesis (partial).

    Forwarded to subscribers as-is; the pipeline never interprets text.
    """
    text: str
    is_final: bool = True
    confidence: float | None = None
    words: tuple[TranscriptWord, ...] = ()
    language: str | None = None
    span_ms: tuple[int, int] | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "is_final": self.is_final,
            "confidence": self.confidence,
            "language": self.language,
            "span_ms": list(self.span_ms) if self.span_ms is not None else None,
            "words": [
                {
                    "word": w.word,
                    "start_ms": w.start_ms,
                    "end_ms": w.end_ms,
                    "confidence": w.confidence,
                }
                for w in self.words
            ],
        }


# =============================================================================
# Capabilities / options
# =============================================================================

@dataclass(frozen=True)
class TransportSupport:
    websocket: bool = False
    http: bool = False


@dataclass(frozen=True)
class ProviderCapabilities:
    """
    What a provider can do.

    force_endpoint:
        The persistent stream can be told to finalize the current utterance.
    partials:
        The persistent stream emits interim hypotheses.
    """
    transports: TransportSupport = TransportSupport()
    force_endpoint: bool = False
    partials: bool = False


@dataclass(frozen=True)
class BatchOptions:
    """Per-request options for one-shot (HTTP) transcription."""
    language: str | None = None
    prompt: str | None = None


# =============================================================================
# Persistent stream
# =============================================================================

class TranscriptionStream(ABC):
    """
    Abstract persistent transcription stream.

    Implementations are responsible for:
    - Opening/closing the provider connection
    - Forwarding frames (send() must not block)
    - Emitting transcripts, partials, errors and status changes

    Non-responsibilities:
    - No retries (the controller owns reconnects)
    - No buffering before connect (the controller owns the preconnect buffer)
    """

    @property
    @abstractmethod
    def status(self) -> ControllerStatus:
        raise NotImplementedError

    @abstractmethod
    async def connect(self, token: CancelToken | None = None) -> None:
        """Open the provider connection. Raises a TranscriptionError on failure."""
        raise NotImplementedError

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection. Idempotent."""
        raise NotImplementedError

    @abstractmethod
    def send(self, frame: AudioFrame) -> None:
        """Queue one frame for the provider."""
        raise NotImplementedError

    async def force_endpoint(self) -> None:
        """Ask the provider to finalize the current utterance (if supported)."""
        return None

    @abstractmethod
    def on_transcript(self, handler: Callable[[TranscriptResult], None]) -> Unsubscribe:
        raise NotImplementedError

    def on_partial(self, handler: Callable[[TranscriptResult], None]) -> Unsubscribe:
        """Streams without interim results accept the subscription and never call it."""
        return noop_unsubscribe

    @abstractmethod
    def on_error(self, handler: Callable[[Exception], None]) -> Unsubscribe:
        raise NotImplementedError

    @abstractmethod
    def on_status_change(self, handler: Callable[[ControllerStatus], None]) -> Unsubscribe:
        raise NotImplementedError


class SubscribableStream(TranscriptionStream, ABC):
    """
    TranscriptionStream with the subscription plumbing filled in.

    Subclasses implement connect/disconnect/send and call the _emit_*
    helpers from their receive paths.
    """

    def __init__(self) -> None:
        self._status = ControllerStatus.IDLE
        self._transcripts: Subscribers[TranscriptResult] = Subscribers("stream.transcript")
        self._partials: Subscribers[TranscriptResult] = Subscribers("stream.partial")
        self._errors: Subscribers[Exception] = Subscribers("stream.error")
        self._statuses: Subscribers[ControllerStatus] = Subscribers("stream.status")

    @property
    def status(self) -> ControllerStatus:
        return self._status

    def on_transcript(self, handler: Callable[[TranscriptResult], None]) -> Unsubscribe:
        return self._transcripts.subscribe(handler)

    def on_partial(self, handler: Callable[[TranscriptResult], None]) -> Unsubscribe:
        return self._partials.subscribe(handler)

    def on_error(self, handler: Callable[[Exception], None]) -> Unsubscribe:
        return self._errors.subscribe(handler)

    def on_status_change(self, handler: Callable[[ControllerStatus], None]) -> Unsubscribe:
        return self._statuses.subscribe(handler)

    def _set_status(self, status: ControllerStatus) -> None:
        if status == self._status:
            return
        self._status = status
        self._statuses.emit(status)

    def _emit_transcript(self, result: TranscriptResult) -> None:
        self._transcripts.emit(result)

    def _emit_partial(self, result: TranscriptResult) -> None:
        self._partials.emit(result)

    def _emit_error(self, error: Exception) -> None:
        self._errors.emit(error)


# =============================================================================
# Provider
# =============================================================================

class TranscriptionProvider(ABC):
    """
    A transcription vendor, injected explicitly into each controller.

    Subclasses override stream() and/or transcribe() to match the
    transports they advertise.
    """

    provider_id: str = "unknown"

    def __init__(self) -> None:
        self._updates: Subscribers[Mapping[str, Any]] = Subscribers("provider.update")

    @property
    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        raise NotImplementedError

    def stream(self) -> TranscriptionStream:
        """Build a fresh persistent stream."""
        raise ValidationError(f"provider {self.provider_id!r} has no streaming transport")

    async def transcribe(
        self,
        audio: bytes,
        options: BatchOptions | None = None,
        token: CancelToken | None = None,
    ) -> TranscriptResult:
        """Transcribe one WAV-encoded chunk."""
        raise ValidationError(f"provider {self.provider_id!r} has no batch transport")

    async def update(self, options: Mapping[str, Any]) -> None:
        """
        Apply new provider options (model, language, ...).

        Subscribers are notified after the options are applied. Streams
        built before the update keep their old options.
        """
        self._apply_options(options)
        self._updates.emit(dict(options))

    def _apply_options(self, options: Mapping[str, Any]) -> None:
        return None

    def on_update(self, handler: Callable[[Mapping[str, Any]], None]) -> Unsubscribe:
        return self._updates.subscribe(handler)
