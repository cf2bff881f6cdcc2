"""
OpenAI batch transcription provider (HTTP transport only).

Each chunk is uploaded as a small WAV file to the audio transcriptions
endpoint. The client is injected (one AsyncOpenAI per process, built in
server/app.py), never constructed here.

Does NOT:
- Chunk audio (the aggregator does)
- Retry failed chunks (a failed chunk is reported and dropped)
"""

from __future__ import annotations

from typing import Any, Mapping

import openai

from adapters.asr.base import (
    BatchOptions,
    ProviderCapabilities,
    TranscriptionProvider,
    TranscriptResult,
    TransportSupport,
)
from adapters.asr.errors import (
    AuthenticationError,
    NetworkError,
    OperationTimeoutError,
    ProviderError,
    RateLimitError,
    TranscriptionError,
    ValidationError,
    parse_retry_after_ms,
)
from constants import OPENAI_CHUNK_FILENAME, OPENAI_DEFAULT_TRANSCRIBE_MODEL
from observability.logger import log_event
from orchestrator.cancellation import CancelToken, run_cancellable

PROVIDER_ID = "openai"


def map_openai_exception(exc: openai.APIError) -> TranscriptionError:
    """Translate an openai SDK exception into the transcription taxonomy."""
    # APITimeoutError subclasses APIConnectionError: check it first
    if isinstance(exc, openai.APITimeoutError):
        return OperationTimeoutError("transcribe", cause=exc)
    if isinstance(exc, openai.APIConnectionError):
        return NetworkError(f"openai connection failed: {exc}", cause=exc)
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthenticationError(str(exc), cause=exc)
    if isinstance(exc, openai.RateLimitError):
        return RateLimitError(
            str(exc),
            retry_after_ms=parse_retry_after_ms(exc.response.headers.get("retry-after")),
            cause=exc,
        )
    if isinstance(exc, (openai.BadRequestError, openai.UnprocessableEntityError, openai.NotFoundError)):
        return ValidationError(str(exc), cause=exc)
    if isinstance(exc, openai.APIStatusError):
        return ProviderError(str(exc), provider_id=PROVIDER_ID, status=exc.status_code, cause=exc)
    return ProviderError(str(exc), provider_id=PROVIDER_ID, cause=exc)


class OpenAIBatchProvider(TranscriptionProvider):
    """Chunk-at-a-time transcription through AsyncOpenAI."""

    provider_id = PROVIDER_ID

    _UPDATABLE = frozenset({"model", "language", "prompt"})

    def __init__(
        self,
        *,
        client: Any,  # Type: openai.AsyncOpenAI
        model: str = OPENAI_DEFAULT_TRANSCRIBE_MODEL,
        language: str | None = None,
        prompt: str | None = None,
    ) -> None:
        super().__init__()
        self._client = client
        self._model = model
        self._language = language
        self._prompt = prompt

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(transports=TransportSupport(http=True))

    async def transcribe(
        self,
        audio: bytes,
        options: BatchOptions | None = None,
        token: CancelToken | None = None,
    ) -> TranscriptResult:
        opts = options or BatchOptions()
        language = opts.language or self._language
        prompt = opts.prompt or self._prompt

        kwargs: dict[str, Any] = {
            "model": self._model,
            "file": (OPENAI_CHUNK_FILENAME, audio, "audio/wav"),
        }
        if language:
            kwargs["language"] = language
        if prompt:
            kwargs["prompt"] = prompt

        try:
            response = await run_cancellable(
                self._client.audio.transcriptions.create(**kwargs),
                token,
            )
        except openai.APIError as e:
            error = map_openai_exception(e)
            log_event({
                "event_type": "OPENAI_TRANSCRIBE_FAILED",
                "exception": type(e).__name__,
                "mapped": type(error).__name__,
                "message": str(e),
            }, level="warn")
            raise error from e

        text = response if isinstance(response, str) else getattr(response, "text", "")
        return TranscriptResult(
            text=(text or "").strip(),
            is_final=True,
            language=language,
            metadata={
                "provider": PROVIDER_ID,
                "model": self._model,
                "audio_bytes": len(audio),
            },
        )

    def _apply_options(self, options: Mapping[str, Any]) -> None:
        unknown = set(options) - self._UPDATABLE
        if unknown:
            raise ValidationError(f"unsupported openai options: {sorted(unknown)}")
        self._model = options.get("model", self._model)
        self._language = options.get("language", self._language)
        self._prompt = options.get("prompt", self._prompt)
