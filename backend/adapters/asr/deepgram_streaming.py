"""
Persistent Deepgram live-transcription stream.

Core model:
- One websocket per stream instance; the controller builds a fresh stream
  for every reconnect, so a stream never outlives its connection.
- Audio and control messages share one outbound queue drained by a single
  sender task, so Finalize / CloseStream never overtake queued audio.
- A keepalive task stops Deepgram's idle timeout while upstream is silent.

Error mapping (at this boundary, nowhere else):
- handshake 401/402/403       -> AuthenticationError
- handshake 429               -> RateLimitError (Retry-After honoured)
- handshake other 4xx         -> ValidationError
- handshake 5xx               -> ProviderError
- refused / reset / 1006 etc. -> NetworkError
- connect deadline            -> OperationTimeoutError
"""

from __future__ import annotations

import asyncio
import json
import urllib.parse
from typing import Any, Callable, Mapping

from websockets.asyncio.client import connect as ws_connect, ClientConnection
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from adapters.asr.base import (
    ProviderCapabilities,
    SubscribableStream,
    TranscriptionProvider,
    TranscriptionStream,
    TranscriptResult,
    TranscriptWord,
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
from audio.frames import AudioFrame
from constants import (
    AUDIO_CHANNELS,
    AUDIO_SAMPLE_RATE_HZ,
    DEEPGRAM_CONNECT_TIMEOUT_S,
    DEEPGRAM_DEFAULT_MODEL,
    DEEPGRAM_KEEPALIVE_INTERVAL_S,
    DEEPGRAM_LISTEN_URL,
    DEEPGRAM_MAX_MESSAGE_BYTES,
)
from observability.logger import log_event
from orchestrator.cancellation import CancelToken, run_cancellable
from orchestrator.enums.status import ControllerStatus

PROVIDER_ID = "deepgram"

# Close codes that mean "the network went away", not "the request was bad"
_NETWORK_CLOSE_CODES = frozenset({1001, 1006, 1011, 1012, 1013, 1014})

_KEEPALIVE_MSG = json.dumps({"type": "KeepAlive"})
_FINALIZE_MSG = json.dumps({"type": "Finalize"})
_CLOSE_STREAM_MSG = json.dumps({"type": "CloseStream"})

ConnectFn = Callable[..., Any]


# =============================================================================
# Error mapping (pure)
# =============================================================================

def map_http_status(
    status: int,
    message: str,
    *,
    retry_after: str | None = None,
) -> TranscriptionError:
    """Map a handshake / REST status code into the transcription taxonomy."""
    if status in (401, 402, 403):
        return AuthenticationError(message)
    if status == 429:
        return RateLimitError(message, retry_after_ms=parse_retry_after_ms(retry_after))
    if 400 <= status < 500:
        return ValidationError(message)
    return ProviderError(message, provider_id=PROVIDER_ID, status=status)


def map_close(code: int | None, reason: str = "") -> TranscriptionError | None:
    """
    Map a websocket close into an error, or None for a clean 1000 close.
    """
    if code == 1000:
        return None
    message = f"deepgram closed the stream (code={code}, reason={reason or 'none'})"
    if code is None or code in _NETWORK_CLOSE_CODES:
        return NetworkError(message)
    if code == 1008:
        return ValidationError(message)
    return ProviderError(message, provider_id=PROVIDER_ID, code=str(code))


def map_connect_exception(exc: BaseException) -> TranscriptionError:
    """Translate an exception raised while opening the websocket."""
    if isinstance(exc, TranscriptionError):
        return exc
    if isinstance(exc, InvalidStatus):
        response = exc.response
        return map_http_status(
            response.status_code,
            f"deepgram rejected the connection: HTTP {response.status_code}",
            retry_after=response.headers.get("Retry-After"),
        )
    if isinstance(exc, TimeoutError):
        return OperationTimeoutError("connect", DEEPGRAM_CONNECT_TIMEOUT_S * 1000, cause=exc)
    if isinstance(exc, ConnectionClosed):
        code = exc.rcvd.code if exc.rcvd is not None else None
        mapped = map_close(code)
        return mapped or NetworkError("deepgram closed during handshake", cause=exc)
    if isinstance(exc, (OSError, InvalidHandshake)):
        return NetworkError(f"deepgram connect failed: {exc!r}", cause=exc)
    return ProviderError(f"deepgram connect failed: {exc!r}", provider_id=PROVIDER_ID)


def map_error_message(data: Mapping[str, Any]) -> TranscriptionError:
    """Map an in-band {"type": "Error"} payload."""
    code = str(data.get("err_code") or data.get("code") or "")
    description = str(data.get("err_msg") or data.get("description") or data.get("message") or "")
    message = f"deepgram error {code}: {description}".strip()
    if code.startswith("DATA"):
        return ValidationError(message)
    if code.startswith("NET"):
        return NetworkError(message)
    return ProviderError(message, provider_id=PROVIDER_ID, code=code or None)


# =============================================================================
# Message parsing (pure)
# =============================================================================

def _seconds_to_ms(value: Any) -> int | None:
    if isinstance(value, (int, float)):
        return int(round(value * 1000))
    return None


def parse_results_message(data: Mapping[str, Any]) -> TranscriptResult | None:
    """
    Convert a Deepgram "Results" message into a TranscriptResult.

    Returns None for messages without a usable transcript.
    """
    if data.get("type") != "Results":
        return None

    channel = data.get("channel") or {}
    alternatives = channel.get("alternatives") or []
    if not alternatives:
        return None

    best = alternatives[0]
    text = str(best.get("transcript") or "").strip()
    if not text:
        return None

    words = tuple(
        TranscriptWord(
            word=str(w.get("punctuated_word") or w.get("word") or ""),
            start_ms=_seconds_to_ms(w.get("start")),
            end_ms=_seconds_to_ms(w.get("end")),
            confidence=w.get("confidence"),
        )
        for w in best.get("words") or []
    )

    start_ms = _seconds_to_ms(data.get("start"))
    duration_ms = _seconds_to_ms(data.get("duration"))
    span = (start_ms, start_ms + duration_ms) if start_ms is not None and duration_ms is not None else None

    languages = best.get("languages") or []

    return TranscriptResult(
        text=text,
        is_final=bool(data.get("is_final")),
        confidence=best.get("confidence"),
        words=words,
        language=languages[0] if languages else None,
        span_ms=span,
        metadata={
            "provider": PROVIDER_ID,
            "speech_final": bool(data.get("speech_final")),
            "request_id": (data.get("metadata") or {}).get("request_id"),
        },
    )


# =============================================================================
# Stream
# =============================================================================

class DeepgramStream(SubscribableStream):
    """
    One Deepgram live connection.

    send() is synchronous and never blocks: frames are queued and written
    by the sender task. Frames sent before connect() or after a failure
    are dropped and counted.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = DEEPGRAM_DEFAULT_MODEL,
        language: str | None = None,
        sample_rate: int = AUDIO_SAMPLE_RATE_HZ,
        channels: int = AUDIO_CHANNELS,
        interim_results: bool = True,
        endpointing_ms: int | None = None,
        keepalive_s: float = DEEPGRAM_KEEPALIVE_INTERVAL_S,
        connect: ConnectFn = ws_connect,
    ) -> None:
        super().__init__()
        self._api_key = api_key
        self._model = model
        self._language = language
        self._sample_rate = sample_rate
        self._channels = channels
        self._interim_results = interim_results
        self._endpointing_ms = endpointing_ms
        self._keepalive_s = keepalive_s
        self._connect = connect

        self._ws: ClientConnection | None = None
        self._outbox: asyncio.Queue[bytes | str | None] = asyncio.Queue()
        self._recv_task: asyncio.Task[None] | None = None
        self._send_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._closing = False

        self.frames_sent: int = 0
        self.frames_dropped: int = 0

    # -------------------------------------------------------------------------
    # TranscriptionStream
    # -------------------------------------------------------------------------

    async def connect(self, token: CancelToken | None = None) -> None:
        if self._ws is not None:
            return

        self._set_status(ControllerStatus.CONNECTING)
        try:
            ws = await run_cancellable(
                self._connect(
                    self.build_url(),
                    additional_headers={"Authorization": f"Token {self._api_key}"},
                    max_size=DEEPGRAM_MAX_MESSAGE_BYTES,
                    ping_interval=None,
                    open_timeout=DEEPGRAM_CONNECT_TIMEOUT_S,
                ),
                token,
            )
        except asyncio.CancelledError:
            self._set_status(ControllerStatus.DISCONNECTED)
            raise
        except Exception as e:  # pylint: disable=broad-exception-caught
            error = map_connect_exception(e)
            log_event({
                "event_type": "DEEPGRAM_CONNECT_FAILED",
                "exception": type(e).__name__,
                "mapped": type(error).__name__,
                "message": str(error),
            }, level="warn")
            self._set_status(ControllerStatus.ERROR)
            raise error from e

        self._ws = ws
        self._closing = False
        self._recv_task = asyncio.create_task(self._recv_loop(ws))
        self._send_task = asyncio.create_task(self._send_loop(ws))
        if self._keepalive_s > 0:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        self._set_status(ControllerStatus.CONNECTED)

    async def disconnect(self) -> None:
        ws = self._ws
        if ws is None:
            self._set_status(ControllerStatus.DISCONNECTED)
            return

        self._closing = True
        self._outbox.put_nowait(_CLOSE_STREAM_MSG)
        self._outbox.put_nowait(None)

        send_task = self._send_task
        if send_task is not None:
            await asyncio.gather(send_task, return_exceptions=True)

        self._ws = None
        self._cancel_tasks()
        await ws.close()
        self._set_status(ControllerStatus.DISCONNECTED)

    def send(self, frame: AudioFrame) -> None:
        if self._ws is None or self._closing:
            self.frames_dropped += 1
            return
        self._outbox.put_nowait(frame.to_bytes())
        self.frames_sent += 1

    async def force_endpoint(self) -> None:
        if self._ws is None or self._closing:
            return
        self._outbox.put_nowait(_FINALIZE_MSG)

    # -------------------------------------------------------------------------
    # Connection helpers
    # -------------------------------------------------------------------------

    def build_url(self) -> str:
        params: dict[str, str] = {
            "model": self._model,
            "encoding": "linear16",
            "sample_rate": str(self._sample_rate),
            "channels": str(self._channels),
            "interim_results": "true" if self._interim_results else "false",
            "punctuate": "true",
        }
        if self._language:
            params["language"] = self._language
        if self._endpointing_ms is not None:
            params["endpointing"] = str(int(self._endpointing_ms))

        qs = urllib.parse.urlencode(params)
        return f"{DEEPGRAM_LISTEN_URL}?{qs}"

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._recv_task, self._send_task, self._keepalive_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()
        self._recv_task = None
        self._send_task = None
        self._keepalive_task = None

    def _fail(self, error: TranscriptionError) -> None:
        self._ws = None
        self._cancel_tasks()
        log_event({
            "event_type": "DEEPGRAM_STREAM_FAILED",
            "exception": type(error).__name__,
            "message": str(error),
        }, level="warn")
        # Error first: the controller detaches before the status change lands
        self._emit_error(error)
        self._set_status(ControllerStatus.ERROR)

    # -------------------------------------------------------------------------
    # Background loops
    # -------------------------------------------------------------------------

    async def _send_loop(self, ws: ClientConnection) -> None:
        while True:
            item = await self._outbox.get()
            if item is None:
                return
            try:
                await ws.send(item)
            except ConnectionClosed:
                # The receive loop reports the close
                return

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self._keepalive_s)
            if self._ws is None or self._closing:
                return
            self._outbox.put_nowait(_KEEPALIVE_MSG)

    async def _recv_loop(self, ws: ClientConnection) -> None:
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError as e:
                    log_event({
                        "event_type": "DEEPGRAM_BAD_MESSAGE",
                        "error": str(e),
                        "preview": raw[:100],
                    }, level="warn")
                    continue
                self._handle_message(data)
        except ConnectionClosed as e:
            if self._closing:
                return
            code = e.rcvd.code if e.rcvd is not None else None
            reason = e.rcvd.reason if e.rcvd is not None else ""
            self._fail(map_close(code, reason) or NetworkError("deepgram closed the stream"))
            return

        if not self._closing:
            self._fail(NetworkError("deepgram closed the stream unexpectedly"))

    def _handle_message(self, data: Mapping[str, Any]) -> None:
        msg_type = data.get("type")

        if msg_type == "Results":
            result = parse_results_message(data)
            if result is None:
                return
            if result.is_final:
                self._emit_transcript(result)
            else:
                self._emit_partial(result)
            return

        if msg_type == "Error" or "err_code" in data:
            self._emit_error(map_error_message(data))
            return

        log_event({
            "event_type": "DEEPGRAM_MESSAGE",
            "type": msg_type,
        }, level="debug")


# =============================================================================
# Provider
# =============================================================================

class DeepgramProvider(TranscriptionProvider):
    """Deepgram live transcription (persistent websocket transport only)."""

    provider_id = PROVIDER_ID

    _UPDATABLE = frozenset({"model", "language", "interim_results", "endpointing_ms"})

    def __init__(
        self,
        *,
        api_key: str,
        model: str = DEEPGRAM_DEFAULT_MODEL,
        language: str | None = None,
        sample_rate: int = AUDIO_SAMPLE_RATE_HZ,
        channels: int = AUDIO_CHANNELS,
        interim_results: bool = True,
        endpointing_ms: int | None = None,
        connect: ConnectFn = ws_connect,
    ) -> None:
        super().__init__()
        self._api_key = api_key
        self._model = model
        self._language = language
        self._sample_rate = sample_rate
        self._channels = channels
        self._interim_results = interim_results
        self._endpointing_ms = endpointing_ms
        self._connect = connect

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            transports=TransportSupport(websocket=True),
            force_endpoint=True,
            partials=self._interim_results,
        )

    def stream(self) -> TranscriptionStream:
        return DeepgramStream(
            api_key=self._api_key,
            model=self._model,
            language=self._language,
            sample_rate=self._sample_rate,
            channels=self._channels,
            interim_results=self._interim_results,
            endpointing_ms=self._endpointing_ms,
            connect=self._connect,
        )

    def _apply_options(self, options: Mapping[str, Any]) -> None:
        unknown = set(options) - self._UPDATABLE
        if unknown:
            raise ValidationError(f"unsupported deepgram options: {sorted(unknown)}")
        self._model = options.get("model", self._model)
        self._language = options.get("language", self._language)
        self._interim_results = bool(options.get("interim_results", self._interim_results))
        self._endpointing_ms = options.get("endpointing_ms", self._endpointing_ms)
