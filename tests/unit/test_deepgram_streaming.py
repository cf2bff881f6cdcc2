# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import json
from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError, InvalidStatus
from websockets.frames import Close
from websockets.http11 import Response

from adapters.asr.deepgram_streaming import (
    DeepgramProvider,
    DeepgramStream,
    map_close,
    map_connect_exception,
    map_error_message,
    map_http_status,
    parse_results_message,
)
from adapters.asr.errors import (
    AuthenticationError,
    NetworkError,
    OperationTimeoutError,
    ProviderError,
    RateLimitError,
    ValidationError,
)
from orchestrator.enums.status import ControllerStatus

from fakes import make_frame


class FakeWebSocket:
    """Stands in for websockets' ClientConnection."""

    def __init__(self) -> None:
        self.sent: list[bytes | str] = []
        self.closed = False
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, item: bytes | str) -> None:
        self.sent.append(item)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def feed(self, item: Any) -> None:
        self._incoming.put_nowait(item)

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> Any:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


def results(text: str, *, is_final: bool) -> str:
    return json.dumps({
        "type": "Results",
        "is_final": is_final,
        "speech_final": is_final,
        "start": 1.5,
        "duration": 0.5,
        "channel": {
            "alternatives": [{
                "transcript": text,
                "confidence": 0.9,
                "words": [{"word": "hi", "punctuated_word": "Hi", "start": 1.5, "end": 1.75, "confidence": 0.9}],
            }],
        },
        "metadata": {"request_id": "req-1"},
    })


async def open_stream(**kwargs: Any) -> tuple[DeepgramStream, FakeWebSocket, list[dict[str, Any]]]:
    ws = FakeWebSocket()
    calls: list[dict[str, Any]] = []

    async def fake_connect(url: str, **options: Any) -> FakeWebSocket:
        calls.append({"url": url, **options})
        return ws

    kwargs.setdefault("keepalive_s", 0)
    stream = DeepgramStream(api_key="dg-key", connect=fake_connect, **kwargs)
    await stream.connect()
    return stream, ws, calls


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------

def test_map_http_status():
    assert isinstance(map_http_status(401, "x"), AuthenticationError)
    assert isinstance(map_http_status(403, "x"), AuthenticationError)
    assert isinstance(map_http_status(400, "x"), ValidationError)
    assert isinstance(map_http_status(503, "x"), ProviderError)

    limited = map_http_status(429, "x", retry_after="3")
    assert isinstance(limited, RateLimitError)
    assert limited.retry_after_ms == 3000


def test_map_close():
    assert map_close(1000) is None
    assert isinstance(map_close(1006), NetworkError)
    assert isinstance(map_close(1011, "internal"), NetworkError)
    assert isinstance(map_close(None), NetworkError)
    assert isinstance(map_close(1008, "policy"), ValidationError)
    assert isinstance(map_close(4000), ProviderError)


def test_map_connect_exception():
    rejected = InvalidStatus(Response(401, "Unauthorized", Headers()))
    assert isinstance(map_connect_exception(rejected), AuthenticationError)

    throttled = InvalidStatus(Response(429, "Too Many Requests", Headers({"Retry-After": "2"})))
    mapped = map_connect_exception(throttled)
    assert isinstance(mapped, RateLimitError)
    assert mapped.retry_after_ms == 2000

    assert isinstance(map_connect_exception(ConnectionRefusedError()), NetworkError)
    assert isinstance(map_connect_exception(TimeoutError()), OperationTimeoutError)


def test_map_error_message():
    assert isinstance(map_error_message({"err_code": "DATA-0000", "err_msg": "bad audio"}), ValidationError)
    assert isinstance(map_error_message({"err_code": "NET-0001"}), NetworkError)

    other = map_error_message({"type": "Error", "description": "oops"})
    assert isinstance(other, ProviderError)
    assert "oops" in str(other)


# ---------------------------------------------------------------------
# Message parsing
# ---------------------------------------------------------------------

def test_parse_results_message():
    result = parse_results_message(json.loads(results("Hi there", is_final=True)))

    assert result is not None
    assert result.text == "Hi there"
    assert result.is_final
    assert result.span_ms == (1500, 2000)
    assert result.words[0].word == "Hi"
    assert result.words[0].start_ms == 1500
    assert result.metadata["request_id"] == "req-1"


def test_parse_results_ignores_empty_transcript():
    assert parse_results_message(json.loads(results("  ", is_final=True))) is None
    assert parse_results_message({"type": "Metadata"}) is None
    assert parse_results_message({"type": "Results", "channel": {"alternatives": []}}) is None


# ---------------------------------------------------------------------
# Stream lifecycle
# ---------------------------------------------------------------------

def test_build_url_encodes_options():
    stream = DeepgramStream(
        api_key="k",
        model="nova-2",
        language="en",
        sample_rate=48_000,
        channels=2,
        interim_results=False,
        endpointing_ms=300,
    )

    parsed = urlparse(stream.build_url())
    qs = {k: v[0] for k, v in parse_qs(parsed.query).items()}

    assert parsed.netloc == "api.deepgram.com"
    assert qs["model"] == "nova-2"
    assert qs["encoding"] == "linear16"
    assert qs["sample_rate"] == "48000"
    assert qs["channels"] == "2"
    assert qs["interim_results"] == "false"
    assert qs["language"] == "en"
    assert qs["endpointing"] == "300"


@pytest.mark.asyncio
async def test_connect_sends_token_header():
    stream, _, calls = await open_stream()

    assert calls[0]["additional_headers"] == {"Authorization": "Token dg-key"}
    assert stream.status is ControllerStatus.CONNECTED
    await stream.disconnect()


@pytest.mark.asyncio
async def test_connect_failure_is_mapped():
    async def refused(url: str, **options: Any) -> None:
        raise ConnectionRefusedError("nope")

    stream = DeepgramStream(api_key="k", connect=refused, keepalive_s=0)

    with pytest.raises(NetworkError):
        await stream.connect()
    assert stream.status is ControllerStatus.ERROR


@pytest.mark.asyncio
async def test_audio_and_finalize_keep_order():
    stream, ws, _ = await open_stream()

    stream.send(make_frame(0, value=1))
    await stream.force_endpoint()
    stream.send(make_frame(20, value=2))
    await settle()

    assert ws.sent[0] == make_frame(0, value=1).to_bytes()
    assert json.loads(ws.sent[1]) == {"type": "Finalize"}
    assert ws.sent[2] == make_frame(20, value=2).to_bytes()
    assert stream.frames_sent == 2
    await stream.disconnect()


@pytest.mark.asyncio
async def test_results_routed_to_partial_and_transcript():
    stream, ws, _ = await open_stream()
    partials: list[str] = []
    finals: list[str] = []
    stream.on_partial(lambda r: partials.append(r.text))
    stream.on_transcript(lambda r: finals.append(r.text))

    ws.feed(results("hel", is_final=False))
    ws.feed(results("hello", is_final=True))
    ws.feed(json.dumps({"type": "SpeechStarted"}))
    ws.feed("not json")
    await settle()

    assert partials == ["hel"]
    assert finals == ["hello"]
    await stream.disconnect()


@pytest.mark.asyncio
async def test_in_band_error_emitted():
    stream, ws, _ = await open_stream()
    errors: list[Exception] = []
    stream.on_error(errors.append)

    ws.feed(json.dumps({"type": "Error", "err_code": "DATA-0000", "err_msg": "bad audio"}))
    await settle()

    assert isinstance(errors[0], ValidationError)
    await stream.disconnect()


@pytest.mark.asyncio
async def test_abnormal_close_fails_stream():
    stream, ws, _ = await open_stream()
    events: list[Any] = []
    stream.on_error(events.append)
    stream.on_status_change(events.append)

    ws.feed(ConnectionClosedError(Close(1011, "internal error"), None))
    await settle()

    assert isinstance(events[0], NetworkError)
    assert events[1] is ControllerStatus.ERROR

    stream.send(make_frame(0))
    assert stream.frames_dropped == 1


@pytest.mark.asyncio
async def test_disconnect_sends_close_stream():
    stream, ws, _ = await open_stream()
    stream.send(make_frame(0))

    await stream.disconnect()

    assert json.loads(ws.sent[-1]) == {"type": "CloseStream"}
    assert ws.closed
    assert stream.status is ControllerStatus.DISCONNECTED

    stream.send(make_frame(20))
    assert stream.frames_dropped == 1


@pytest.mark.asyncio
async def test_keepalive_while_idle():
    stream, ws, _ = await open_stream(keepalive_s=0.01)

    await asyncio.sleep(0.05)
    await stream.disconnect()

    assert {"type": "KeepAlive"} in [json.loads(m) for m in ws.sent if isinstance(m, str)]


# ---------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_provider_update_applies_to_new_streams():
    provider = DeepgramProvider(api_key="k")
    seen: list[Any] = []
    provider.on_update(seen.append)

    before = provider.stream()
    await provider.update({"language": "de", "endpointing_ms": 250})
    after = provider.stream()

    assert isinstance(after, DeepgramStream)
    assert "language=de" in after.build_url()
    assert isinstance(before, DeepgramStream)
    assert "language=" not in before.build_url()
    assert seen == [{"language": "de", "endpointing_ms": 250}]


@pytest.mark.asyncio
async def test_provider_rejects_unknown_options():
    provider = DeepgramProvider(api_key="k")

    with pytest.raises(ValidationError):
        await provider.update({"voice": "x"})


def test_provider_capabilities():
    caps = DeepgramProvider(api_key="k").capabilities

    assert caps.transports.websocket
    assert not caps.transports.http
    assert caps.force_endpoint
