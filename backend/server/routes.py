"""
HTTP and WebSocket routes.

/ws carries one transcription session per socket:
- inbound text frames are JSON control messages
- inbound binary frames are mic audio (see protocol/binary.py)
- outbound frames are JSON (SESSION_INIT, STATUS, PARTIAL, TRANSCRIPT, ERROR)

Shared dependencies (config, provider factory) come from app.state.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from observability.logger import log_event
from session.gateway import GatewayResult, SessionGateway


def register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health() -> dict[str, str]:  # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    @app.websocket("/ws")
    async def transcribe_ws(ws: WebSocket) -> None:  # pyright: ignore[reportUnusedFunction]
        await ws.accept()
        gateway = SessionGateway(
            config=app.state.config,
            provider_factory=app.state.provider_factory,
        )
        await _serve_session(ws, gateway)


async def _serve_session(ws: WebSocket, gateway: SessionGateway) -> None:
    sender: asyncio.Task[None] | None = None
    reason = "client_disconnect"
    try:
        await _send_all(ws, await gateway.on_ws_connect())
        sender = asyncio.create_task(_pump_outbound(ws, gateway))
        await _receive_loop(ws, gateway)
    except WebSocketDisconnect:
        pass
    except Exception as exc:  # pylint: disable=broad-exception-caught
        reason = "server_error"
        log_event({
            "event_type": "WS_FATAL_ERROR",
            "session_id": gateway.session_id,
            "exception": type(exc).__name__,
            "message": str(exc),
        }, level="error")
    finally:
        if sender is not None:
            sender.cancel()
    await gateway.on_ws_disconnect(reason=reason)


async def _receive_loop(ws: WebSocket, gateway: SessionGateway) -> None:
    while True:
        msg: dict[str, Any] = await ws.receive()
        if msg["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(code=msg.get("code", 1000))

        if msg.get("bytes") is not None:
            result = await gateway.on_binary_message(msg["bytes"])
        elif msg.get("text") is not None:
            result = await gateway.on_json_message(msg["text"])
        else:
            continue
        await _send_all(ws, result)


async def _pump_outbound(ws: WebSocket, gateway: SessionGateway) -> None:
    """Forward controller output to the socket until cancelled or the socket dies."""
    while True:
        msg = await gateway.next_outbound()
        try:
            await ws.send_text(json.dumps(msg))
        except (WebSocketDisconnect, RuntimeError) as exc:
            log_event({
                "event_type": "WS_SEND_FAILED",
                "session_id": gateway.session_id,
                "msg_type": msg.get("type"),
                "exception": type(exc).__name__,
            }, level="warn")
            return


async def _send_all(ws: WebSocket, result: GatewayResult) -> None:
    for msg in result.outbound_json:
        await ws.send_text(json.dumps(msg))
