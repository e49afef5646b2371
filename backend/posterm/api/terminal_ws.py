"""
WS /ws/terminal — persistent channel between a terminal display and the core.

Frames are JSON objects with a ``type`` field (see ``posterm.services.events``).
A bad frame gets an ``error`` event back; the socket stays open.
"""
from __future__ import annotations
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from posterm.core.errors import PosTermError, describe_error
from posterm.core.logging import get_logger
from posterm.db import repo
from posterm.services.core_state import TerminalCore
from posterm.services.events import (
    INBOUND_TYPES, ErrorEvent, MethodFailedEvent, NfcDetectedEvent, PaymentCompletedEvent,
    QrScannedEvent, TerminalConfig, TerminalReadyEvent, inbound_adapter,
)

router = APIRouter()
logger = get_logger(__name__)


class WebSocketConnection:
    """Adapts a Starlette WebSocket to the channel's connection protocol."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, data: dict) -> None:
        await self.websocket.send_json(data)

    async def close(self) -> None:
        if self.is_open:
            await self.websocket.close()


async def _reply_error(conn: WebSocketConnection, message: str, **extra) -> None:
    if conn.is_open:
        await conn.send_json(ErrorEvent(message=message, **extra).to_wire())


async def handle_frame(core: TerminalCore, conn: WebSocketConnection, raw: str) -> None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        await _reply_error(conn, "Invalid message format")
        return

    msg_type = data.get("type") if isinstance(data, dict) else None
    if msg_type not in INBOUND_TYPES:
        await _reply_error(conn, "Unknown message type", received_type=str(msg_type))
        return

    try:
        event = inbound_adapter.validate_python(data)
    except ValidationError as exc:
        details = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
        await _reply_error(conn, "Invalid message", received_type=msg_type, error={"details": details})
        return

    try:
        await _dispatch(core, conn, event)
    except PosTermError as exc:
        logger.info("%s rejected: %s", msg_type, exc.message)
        await _reply_error(conn, exc.message, received_type=msg_type, error=exc.to_dict())
    except Exception:
        logger.exception("Error handling %s frame", msg_type)
        info = describe_error("SYS003")
        await _reply_error(conn, "Internal server error", received_type=msg_type,
                           error=info.model_dump(mode="json", by_alias=True))


async def _dispatch(core: TerminalCore, conn: WebSocketConnection, event) -> None:
    if isinstance(event, TerminalReadyEvent):
        async with core.sessions() as db:
            terminal = await repo.get_terminal(db, event.terminal_id)
        if terminal is None:
            await _reply_error(conn, "Terminal not found", received_type=event.type)
            return
        await core.channel.register(event.terminal_id, conn, TerminalConfig(**terminal.config()))
        return

    if not core.channel.is_registered(event.terminal_id, conn):
        await _reply_error(conn, "Terminal not registered", received_type=event.type)
        return

    if isinstance(event, (NfcDetectedEvent, QrScannedEvent)):
        logger.info("%s detected on terminal %s", event.method.value, event.terminal_id)
        await core.orchestrator.handle_method_detected(
            event.terminal_id, event.payment_id, event.method, event.payload,
        )
    elif isinstance(event, PaymentCompletedEvent):
        await core.orchestrator.handle_external_completion(event.terminal_id, event.payment_id, event.result)
    elif isinstance(event, MethodFailedEvent):
        await core.orchestrator.handle_method_failure(
            event.terminal_id, event.payment_id, event.method, event.reason,
        )


@router.websocket("/ws/terminal")
async def terminal_socket(websocket: WebSocket):
    core: TerminalCore = websocket.app.state.core
    await websocket.accept()
    conn = WebSocketConnection(websocket)
    logger.info("New WebSocket connection")
    try:
        while True:
            raw = await websocket.receive_text()
            await handle_frame(core, conn, raw)
    except WebSocketDisconnect:
        pass
    finally:
        core.channel.unregister(conn)
