"""
Session gateway: one WebSocket client == one transcription session.

Responsibilities:
- Own the session's frame source and TranscriptionController
- Route inbound binary audio frames -> frame source (with gap detection)
- Route inbound JSON control messages -> frame source / controller
- Relay controller output (partials, transcripts, errors, status) to the
  client through an outbound queue
- Log every routing decision

NOT responsible for:
- Speech or segment detection (the client sends VAD / SEGMENT_END)
- Provider selection (the provider factory is injected)
- Retry policy (the controller owns it)
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, TYPE_CHECKING

from uuid import uuid4

from adapters.asr.base import TranscriptionProvider, TranscriptResult
from adapters.asr.errors import TranscriptionError, is_retryable
from audio.source import InMemoryFrameSource, SegmentBoundary
from observability.logger import log_event
from orchestrator.controller import TranscriptionController
from orchestrator.enums.status import ControllerStatus
from orchestrator.subscriptions import Unsubscribe
from protocol.binary import (
    BinaryProtocolError,
    check_sequence_gap,
    decode_c2s_frame,
)

if TYPE_CHECKING:
    from config import AppConfig

ProviderFactory = Callable[[], TranscriptionProvider]

# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _new_session_id() -> str:
    return f"sess_{uuid4().hex[:12]}"


def _error_json(error: Exception) -> dict[str, Any]:
    if isinstance(error, TranscriptionError):
        body = error.to_json()
    else:
        body = {"name": type(error).__name__, "message": str(error), "ts_ms": _now_ms()}
    body["retryable"] = is_retryable(error)
    return body


# ------------------------------------------------------------------
# Gateway result
# ------------------------------------------------------------------

@dataclass(frozen=True)
class GatewayResult:
    """
    Immediate replies for a gateway boundary call.

    Asynchronous controller output (transcripts etc.) does not go here;
    it is delivered through next_outbound().
    """
    outbound_json: tuple[dict[str, Any], ...] = ()


# ------------------------------------------------------------------
# SessionGateway
# ------------------------------------------------------------------

class SessionGateway:
    """
    One gateway == one transcription session.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        provider_factory: ProviderFactory,
    ) -> None:
        self._config = config
        self._provider_factory = provider_factory

        self.session_id: str | None = None
        self.source: InMemoryFrameSource | None = None
        self.controller: TranscriptionController | None = None

        self._outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._unsubs: list[Unsubscribe] = []
        self._connect_task: asyncio.Task[None] | None = None
        self._last_ingest_seq: int | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def on_ws_connect(self) -> GatewayResult:
        """Called when a WebSocket connection is established."""
        session_id = _new_session_id()
        self.session_id = session_id

        self.source = InMemoryFrameSource()
        controller = TranscriptionController(
            provider=self._provider_factory(),
            frame_source=self.source,
            options=self._config.transcription_options(),
        )
        self.controller = controller

        self._unsubs = [
            controller.on_partial(self._relay_partial),
            controller.on_transcript(self._relay_transcript),
            controller.on_error(self._relay_error),
            controller.on_status_change(self._relay_status),
        ]
        self._last_ingest_seq = None

        log_event({
            "event_type": "SESSION_STARTED",
            "session_id": session_id,
            "transport": controller.transport.value,
        })

        init_msg: dict[str, Any] = {
            "type": "SESSION_INIT",
            "session_id": session_id,
            "audio_format": self._config.ingest_format.to_json(),
            "config": {
                "transport": controller.transport.value,
                "flush_on_segment_end": self._config.flush_on_segment_end,
            },
        }
        return GatewayResult(outbound_json=(init_msg,))

    async def on_ws_disconnect(self, reason: str | None = None) -> GatewayResult:
        """Called when the WebSocket disconnects."""
        if self.controller is None:
            log_event({
                "event_type": "WS_DISCONNECT_WITHOUT_SESSION",
                "reason": reason,
            })
            return GatewayResult()

        task = self._connect_task
        self._connect_task = None
        if task is not None and not task.done():
            task.cancel()

        await self.controller.shutdown()
        for unsub in self._unsubs:
            unsub()
        self._unsubs = []

        log_event({
            "event_type": "SESSION_ENDED",
            "session_id": self.session_id,
            "reason": reason,
        })
        return GatewayResult()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def on_json_message(self, payload: str) -> GatewayResult:
        """Route inbound JSON control messages."""
        controller = self.controller
        source = self.source
        if controller is None or source is None:
            log_event({
                "event_type": "MESSAGE_WITHOUT_SESSION",
                "payload_preview": payload[:100],
            })
            return GatewayResult()

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            log_event({
                "event_type": "JSON_DECODE_ERROR",
                "session_id": self.session_id,
                "error": str(e),
                "payload_preview": payload[:100],
            }, level="warn")
            return GatewayResult()

        if not isinstance(data, dict):
            log_event({
                "event_type": "JSON_NOT_AN_OBJECT",
                "session_id": self.session_id,
            }, level="warn")
            return GatewayResult()

        msg_type = data.get("type")
        log_event({
            "event_type": "CONTROL_MESSAGE",
            "session_id": self.session_id,
            "msg_type": msg_type,
        }, level="debug")

        if msg_type == "CONNECT":
            self._start_connect(controller)
        elif msg_type == "DISCONNECT":
            await controller.disconnect()
        elif msg_type == "VAD":
            source.publish_vad(bool(data.get("speech")))
        elif msg_type == "SEGMENT_END":
            end_ms = int(data.get("end_ms", _now_ms()))
            start_ms = int(data.get("start_ms", end_ms))
            source.publish_segment(SegmentBoundary(start_ms=start_ms, end_ms=end_ms))
        elif msg_type == "FORCE_ENDPOINT":
            await controller.force_endpoint()
        elif msg_type == "CLEAR":
            controller.clear()
        elif msg_type == "UPDATE_PROVIDER":
            try:
                await controller.update_provider(data.get("options") or {})
            except TranscriptionError as e:
                return GatewayResult(outbound_json=({"type": "ERROR", "error": _error_json(e)},))
        else:
            log_event({
                "event_type": "UNKNOWN_MESSAGE_TYPE",
                "msg_type": msg_type,
                "session_id": self.session_id,
            }, level="warn")

        return GatewayResult()

    async def on_binary_message(self, payload: bytes) -> GatewayResult:
        """
        Handle inbound binary mic audio frames.

        - Decode + validate
        - Detect sequence gaps
        - Publish to the frame source (the controller routes from there)
        """
        if self.source is None:
            log_event({
                "event_type": "BINARY_WITHOUT_SESSION",
                "payload_len": len(payload),
            })
            return GatewayResult()

        try:
            decoded = decode_c2s_frame(
                payload,
                ts_ms=_now_ms(),
                audio_format=self._config.ingest_format,
            )
        except (BinaryProtocolError, ValueError) as e:
            log_event({
                "event_type": "BINARY_DECODE_ERROR",
                "session_id": self.session_id,
                "error": str(e),
                "payload_len": len(payload),
            }, level="warn")
            return GatewayResult()

        gap_result = check_sequence_gap(
            last_seq=self._last_ingest_seq,
            current_seq=decoded.sequence_num,
        )
        if gap_result.gap:
            log_event({
                "event_type": "SEQ_GAP_DETECTED",
                "session_id": self.session_id,
                "expected": gap_result.expected,
                "actual": gap_result.actual,
                "gap_size": gap_result.gap_size,
            }, level="warn")

        self._last_ingest_seq = decoded.sequence_num
        self.source.publish_frame(decoded.frame)
        return GatewayResult()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def next_outbound(self) -> dict[str, Any]:
        """Wait for the next asynchronous message for the client."""
        return await self._outbound.get()

    def drain_outbound(self) -> tuple[dict[str, Any], ...]:
        """Take every queued outbound message without waiting."""
        out: list[dict[str, Any]] = []
        while not self._outbound.empty():
            out.append(self._outbound.get_nowait())
        return tuple(out)

    def _relay_partial(self, result: TranscriptResult) -> None:
        self._outbound.put_nowait({"type": "PARTIAL", "session_id": self.session_id, "result": result.to_json()})

    def _relay_transcript(self, result: TranscriptResult) -> None:
        self._outbound.put_nowait({"type": "TRANSCRIPT", "session_id": self.session_id, "result": result.to_json()})

    def _relay_error(self, error: Exception) -> None:
        self._outbound.put_nowait({"type": "ERROR", "session_id": self.session_id, "error": _error_json(error)})

    def _relay_status(self, status: ControllerStatus) -> None:
        self._outbound.put_nowait({"type": "STATUS", "session_id": self.session_id, "status": status.value})

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    def _start_connect(self, controller: TranscriptionController) -> None:
        # Connect runs beside the receive loop so frames keep arriving
        # (and buffering) while the transport comes up.
        if self._connect_task is not None and not self._connect_task.done():
            return
        self._connect_task = asyncio.create_task(self._run_connect(controller))

    async def _run_connect(self, controller: TranscriptionController) -> None:
        try:
            await controller.connect()
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "CONNECT_TASK_FAILED",
                "session_id": self.session_id,
                "exception": type(e).__name__,
                "message": str(e),
            }, level="error")
            self._relay_error(e)
