"""Terminal router - realtime terminal endpoint.

ws /terminal?sessionId=<id> -> TerminalBridge -> SessionRegistry -> PTY
"""

from __future__ import annotations

import asyncio
from typing import Optional, Union

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from terminalhub.api.dependencies import get_command_filter_dep, get_session_registry_dep
from terminalhub.kernel.security.command_filter import CommandLineFilter
from terminalhub.runtime.session_registry import SessionRegistry
from terminalhub.services.terminal_bridge import TerminalBridge

logger = structlog.get_logger()

router = APIRouter(tags=["terminal"])


class WebSocketTransport:
    """Adapts a Starlette WebSocket to the bridge Transport protocol."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def connected(self) -> bool:
        return (
            not self._closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, text: str) -> None:
        if not self.connected:
            return
        async with self._send_lock:
            try:
                await self.websocket.send_text(text)
            except (WebSocketDisconnect, RuntimeError):
                self._closed = True

    async def receive(self) -> Optional[Union[str, bytes]]:
        if self._closed:
            return None
        try:
            message = await self.websocket.receive()
        except (WebSocketDisconnect, RuntimeError):
            self._closed = True
            return None

        if message["type"] == "websocket.disconnect":
            self._closed = True
            return None
        if message.get("bytes") is not None:
            return message["bytes"]
        return message.get("text") or ""

    async def close(self, code: int = 1000) -> None:
        if not self.connected:
            self._closed = True
            return
        self._closed = True
        async with self._send_lock:
            try:
                await self.websocket.close(code=code)
            except RuntimeError as exc:
                logger.debug("websocket_close_failed", error=str(exc))


@router.websocket("/terminal")
async def terminal_endpoint(
    websocket: WebSocket,
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    registry: SessionRegistry = Depends(get_session_registry_dep),
    line_filter: CommandLineFilter = Depends(get_command_filter_dep),
):
    """Bidirectional terminal stream.

    Query params:
    - sessionId: Optional id of a live session to join

    Server -> Client:
    - first text frame: {"type": "session", "sessionId": "<id>"}
    - then raw terminal output as text frames

    Client -> Server:
    - {"type": "resize", "cols": N, "rows": M}
    - anything else is keyboard input
    """
    await websocket.accept()
    transport = WebSocketTransport(websocket)
    bridge = TerminalBridge(
        transport,
        registry,
        requested_session_id=session_id,
        line_filter=line_filter,
    )
    try:
        await bridge.run()
    except Exception as exc:
        logger.error(
            "terminal_bridge_failed",
            error=f"{type(exc).__name__}: {exc}",
            exc_info=True,
        )
        await transport.close(code=1011)
