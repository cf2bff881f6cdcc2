"""
Transcription error taxonomy.

Providers translate vendor exceptions (HTTP statuses, websocket close
codes, SDK exceptions) into these classes at their boundary. Everything
above the adapters (retry policy, controller, aggregator) reasons only
about this taxonomy.

Retryable:
- NetworkError
- OperationTimeoutError
- RateLimitError (may carry a retry-after hint)

Fatal:
- AuthenticationError
- ValidationError
- ProviderError
- AbortedError
"""

from __future__ import annotations

import time


class TranscriptionError(Exception):
    """Base class for every error surfaced by the transcription pipeline."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.ts_ms = time.time_ns() // 1_000_000

    def to_json(self) -> dict[str, object]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "ts_ms": self.ts_ms,
        }


class NetworkError(TranscriptionError):
    """Connection refused, dropped, or closed uncleanly."""

    def __init__(
        self,
        message: str,
        *,
        transient: bool = True,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.transient = transient


class OperationTimeoutError(TranscriptionError):
    """An operation (connect, flush, request) exceeded its deadline."""

    def __init__(
        self,
        operation: str,
        timeout_ms: float | None = None,
        *,
        cause: BaseException | None = None,
    ) -> None:
        suffix = f" after {timeout_ms:g}ms" if timeout_ms else ""
        super().__init__(f"{operation} timed out{suffix}", cause=cause)
        self.operation = operation
        self.timeout_ms = timeout_ms


class RateLimitError(TranscriptionError):
    """
    Provider throttled the request.

    retry_after_ms:
        Provider's suggested wait, when it sent one. Honoured by the
        backoff policy ahead of the exponential schedule.
    """

    def __init__(
        self,
        message: str,
        *,
        retry_after_ms: float | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.retry_after_ms = retry_after_ms


class AuthenticationError(TranscriptionError):
    """Credentials missing, invalid, or not permitted."""


class ValidationError(TranscriptionError):
    """Request rejected as malformed (bad audio format, bad options)."""


class ProviderError(TranscriptionError):
    """Provider-side failure that is not worth retrying automatically."""

    def __init__(
        self,
        message: str,
        *,
        provider_id: str,
        status: int | None = None,
        code: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.provider_id = provider_id
        self.status = status
        self.code = code


class AbortedError(TranscriptionError):
    """The operation was cancelled by its caller."""

    def __init__(self, message: str = "operation aborted", *, cause: BaseException | None = None) -> None:
        super().__init__(message, cause=cause)


_RETRYABLE = (NetworkError, OperationTimeoutError, RateLimitError)


def is_retryable(error: BaseException | None) -> bool:
    """True only for network, timeout and rate-limit failures."""
    return isinstance(error, _RETRYABLE)


def retry_after_hint_ms(error: BaseException | None) -> float | None:
    """Positive retry-after hint carried by a rate-limit error, else None."""
    if isinstance(error, RateLimitError) and error.retry_after_ms is not None:
        if error.retry_after_ms > 0:
            return float(error.retry_after_ms)
    return None


def parse_retry_after_ms(value: str | None) -> float | None:
    """
    Parse an HTTP Retry-After header (delta-seconds form) into ms.

    HTTP-date values and garbage are ignored (None).
    """
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds <= 0:
        return None
    return seconds * 1000.0
