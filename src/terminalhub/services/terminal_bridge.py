"""Terminal Bridge - one realtime connection bound to one session.

State machine:

    CONNECTING -> PROVISIONING -> STREAMING -> CLOSING -> CLOSED

Connection close and shell exit are both edges into CLOSING; whichever
comes first wins and exactly one registry teardown follows.
"""

from __future__ import annotations

import asyncio
import codecs
from enum import Enum
from typing import Callable, Optional, Protocol, Union

import structlog

from terminalhub.config import settings
from terminalhub.domain.errors import HandleNotAliveError
from terminalhub.domain.messages import DataFrame, ResizeFrame, decode_client_message, session_frame
from terminalhub.domain.session import Session, SessionMode, TerminalDimensions
from terminalhub.infrastructure.logging_setup import bind_session_context, clear_session_context
from terminalhub.kernel.pty.supervisor import ExitStatus
from terminalhub.kernel.security.command_filter import CommandLineFilter
from terminalhub.runtime.session_registry import SessionRegistry
from terminalhub.services.line_discipline import (
    Control,
    Echo,
    Line,
    LineBuffer,
    OutputCoalescer,
)

logger = structlog.get_logger()

RED = "\x1b[31m"
YELLOW = "\x1b[33m"
RESET = "\x1b[0m"

UNAVAILABLE_BANNER = (
    f"\r\n{RED}[terminal unavailable]{RESET} "
    "Sandboxed terminals are not available on this server. Input is disabled.\r\n"
)
UNAVAILABLE_REPLY = f"{RED}[terminal unavailable]{RESET} Input ignored: no shell is attached.\r\n"
DIRECT_MODE_BANNER = (
    f"{YELLOW}[warning]{RESET} Sandbox unavailable; using a restricted local shell.\r\n"
)
SESSION_ENDED_NOTICE = f"\r\n{YELLOW}[session closed]{RESET}\r\n"


class Transport(Protocol):
    """Realtime connection as seen by the bridge."""

    async def send_text(self, text: str) -> None: ...

    async def receive(self) -> Optional[Union[str, bytes]]:
        """Next client payload, or None once the connection is closed."""
        ...

    async def close(self, code: int = 1000) -> None: ...


class BridgeState(str, Enum):
    CONNECTING = "connecting"
    PROVISIONING = "provisioning"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


def deny_message(reason: str, prompt: str) -> str:
    return f"{YELLOW}[blocked]{RESET} {reason}\r\n{prompt}"


class TerminalBridge:
    """Translates transport frames into pty calls and pty output into frames.

    Usage:
        bridge = TerminalBridge(transport, registry, requested_session_id=sid)
        await bridge.run()
    """

    def __init__(
        self,
        transport: Transport,
        registry: SessionRegistry,
        *,
        requested_session_id: Optional[str] = None,
        line_filter: Optional[CommandLineFilter] = None,
        prompt: Optional[str] = None,
    ):
        self.transport = transport
        self.registry = registry
        self.requested_session_id = requested_session_id
        self.line_filter = line_filter or CommandLineFilter()
        self.prompt = settings.terminal_prompt if prompt is None else prompt

        self.state = BridgeState.CONNECTING
        self.session: Optional[Session] = None
        self.owner = False
        self.fallback = False
        self.exit_status: Optional[ExitStatus] = None

        self._buffer = LineBuffer()
        self._coalescer = OutputCoalescer()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._unsubscribe: list[Callable[[], None]] = []
        self._closing = asyncio.Event()
        self._closed = False

    @property
    def supervisor(self):
        return self.registry.supervisor

    async def run(self) -> None:
        """Drive the connection through its whole lifecycle."""
        try:
            await self._connect()
            await self._provision()
            await self._stream()
        finally:
            await self._shutdown()

    # ----- CONNECTING / PROVISIONING -----------------------------------

    async def _connect(self) -> None:
        self.state = BridgeState.CONNECTING
        self.session, self.owner = await self.registry.attach(self.requested_session_id)
        bind_session_context(self.session.id)
        await self.transport.send_text(session_frame(self.session.id))
        logger.info("terminal_connected", owner=self.owner, requested_id=self.requested_session_id)

    async def _provision(self) -> None:
        self.state = BridgeState.PROVISIONING
        session = self.session
        dims = TerminalDimensions.clamped(
            settings.terminal_default_cols, settings.terminal_default_rows
        )
        await self.registry.start(session, dims)

        if session.pty is None:
            self.fallback = True
            await self.transport.send_text(UNAVAILABLE_BANNER)
            logger.info("terminal_fallback_mode", mode=session.mode.value)
            return

        if session.mode == SessionMode.DIRECT and self.registry.sandbox_enabled:
            await self.transport.send_text(DIRECT_MODE_BANNER)

        self._unsubscribe.append(self.supervisor.on_data(session.pty, self._forward_output))
        self._unsubscribe.append(self.supervisor.on_exit(session.pty, self._on_pty_exit))

    # ----- STREAMING ---------------------------------------------------

    async def _stream(self) -> None:
        if self._closing.is_set():
            return
        self.state = BridgeState.STREAMING
        closing_waiter = asyncio.ensure_future(self._closing.wait())
        stop_on = {closing_waiter}
        ended_waiter = None
        if self.fallback:
            # No pty exit will arrive; watch the session itself.
            ended_waiter = asyncio.ensure_future(self.session.ended.wait())
            stop_on.add(ended_waiter)
        try:
            while not self._closing.is_set():
                receive = asyncio.ensure_future(self.transport.receive())
                done, _ = await asyncio.wait(
                    {receive} | stop_on,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if receive not in done:
                    receive.cancel()
                    if ended_waiter in done:
                        await self.transport.send_text(SESSION_ENDED_NOTICE)
                        logger.info("terminal_session_ended_elsewhere")
                    break
                payload = receive.result()
                if payload is None:
                    break
                await self._handle_frame(payload)
        finally:
            for waiter in stop_on:
                waiter.cancel()

    async def _handle_frame(self, payload: Union[str, bytes]) -> None:
        frame = decode_client_message(payload)

        if self.fallback:
            if isinstance(frame, DataFrame):
                await self.transport.send_text(UNAVAILABLE_REPLY)
            return

        try:
            if isinstance(frame, ResizeFrame):
                dims = frame.dimensions
                self.supervisor.resize(self.session.pty, dims.cols, dims.rows)
            else:
                await self._handle_input(frame.data)
        except HandleNotAliveError:
            logger.debug("terminal_input_after_exit")
            self._closing.set()

    async def _handle_input(self, data: bytes) -> None:
        pty = self.session.pty
        for event in self._buffer.feed(data):
            if isinstance(event, Echo):
                await self.transport.send_text(event.text)
            elif isinstance(event, Control):
                await self.supervisor.write(pty, event.data)
            elif isinstance(event, Line):
                decision = self.line_filter.evaluate(event.text)
                if decision.allowed:
                    await self.supervisor.write(pty, event.text.encode("utf-8"))
                else:
                    logger.warning("terminal_line_denied", rule=decision.rule)
                    await self.transport.send_text(deny_message(decision.reason, self.prompt))

    async def _forward_output(self, chunk: bytes) -> None:
        if self._closed:
            return
        kept = self._coalescer.filter(chunk)
        if kept is None:
            return
        text = self._decoder.decode(kept)
        if text:
            await self.transport.send_text(text)

    async def _on_pty_exit(self, status: ExitStatus) -> None:
        self.exit_status = status
        if not self._closing.is_set() and not status.killed:
            try:
                await self.transport.send_text(
                    f"\r\n{YELLOW}[process exited with code {status.exit_code}]{RESET}\r\n"
                )
            except Exception as exc:
                logger.debug("terminal_exit_notice_failed", error=str(exc))
        self._closing.set()

    # ----- CLOSING / CLOSED --------------------------------------------

    async def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.state = BridgeState.CLOSING
        self._closing.set()

        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

        session = self.session
        try:
            if session is not None:
                if self.owner:
                    await self.registry.destroy(session.id)
                else:
                    await self.registry.detach(session)
        finally:
            try:
                await self.transport.close()
            except Exception as exc:
                logger.debug("terminal_transport_close_failed", error=str(exc))
            self.state = BridgeState.CLOSED
            logger.info("terminal_closed", owner=self.owner)
            clear_session_context()
