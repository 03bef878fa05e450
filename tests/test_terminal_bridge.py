"""Terminal bridge tests over an in-memory transport."""

import asyncio
import json

import pytest

from terminalhub.domain.session import SessionMode
from terminalhub.kernel.pty.supervisor import ExitStatus
from terminalhub.runtime.session_registry import SessionRegistry
from terminalhub.services.terminal_bridge import (
    SESSION_ENDED_NOTICE,
    UNAVAILABLE_BANNER,
    UNAVAILABLE_REPLY,
    BridgeState,
    TerminalBridge,
)


class FakeTransport:
    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False

    async def send_text(self, text: str) -> None:
        self.sent.append(text)

    async def receive(self):
        return await self.inbound.get()

    async def close(self, code: int = 1000) -> None:
        self.closed = True

    def feed(self, *payloads) -> None:
        for payload in payloads:
            self.inbound.put_nowait(payload)

    def disconnect(self) -> None:
        self.inbound.put_nowait(None)

    @property
    def output(self) -> str:
        return "".join(self.sent[1:])


@pytest.fixture
def registry(terminalhub_root, fake_supervisor):
    return SessionRegistry(
        workspaces_root=terminalhub_root / "workspaces",
        supervisor=fake_supervisor,
        sandbox_enabled=False,
        allow_direct_shell=True,
    )


async def _run(bridge: TerminalBridge, timeout: float = 5.0) -> None:
    await asyncio.wait_for(bridge.run(), timeout=timeout)


async def _until_streaming(bridge: TerminalBridge) -> None:
    for _ in range(200):
        if bridge.state == BridgeState.STREAMING:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"bridge stuck in {bridge.state}")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_first_frame_announces_session(self, registry):
        transport = FakeTransport()
        transport.disconnect()
        bridge = TerminalBridge(transport, registry)
        await _run(bridge)

        frame = json.loads(transport.sent[0])
        assert frame == {"type": "session", "sessionId": bridge.session.id}

    @pytest.mark.asyncio
    async def test_owner_disconnect_destroys_session(self, registry, fake_supervisor):
        transport = FakeTransport()
        transport.disconnect()
        bridge = TerminalBridge(transport, registry)
        await _run(bridge)

        assert bridge.owner is True
        assert bridge.state == BridgeState.CLOSED
        assert transport.closed
        assert bridge.session.id not in registry
        assert not bridge.session.workspace_dir.exists()
        assert len(fake_supervisor.killed) == 1

    @pytest.mark.asyncio
    async def test_joined_connection_leaves_session_running(self, registry):
        owner_transport = FakeTransport()
        owner = TerminalBridge(owner_transport, registry)
        owner_task = asyncio.create_task(owner.run())
        await _until_streaming(owner)

        joiner_transport = FakeTransport()
        joiner_transport.disconnect()
        joiner = TerminalBridge(joiner_transport, registry, requested_session_id=owner.session.id)
        await _run(joiner)

        assert joiner.owner is False
        assert joiner.session is owner.session
        assert owner.session.id in registry
        assert owner.session.connections == 1

        owner_transport.disconnect()
        await asyncio.wait_for(owner_task, timeout=5)
        assert owner.session.id not in registry

    @pytest.mark.asyncio
    async def test_unknown_session_id_gets_fresh_session(self, registry):
        transport = FakeTransport()
        transport.disconnect()
        bridge = TerminalBridge(transport, registry, requested_session_id="stale-session-0001")
        await _run(bridge)

        assert bridge.session.id != "stale-session-0001"
        assert bridge.owner is True

    @pytest.mark.asyncio
    async def test_process_exit_closes_connection(self, registry, fake_supervisor):
        transport = FakeTransport()
        bridge = TerminalBridge(transport, registry)
        task = asyncio.create_task(bridge.run())
        await _until_streaming(bridge)

        await fake_supervisor.finish(bridge.session.pty, ExitStatus(exit_code=0, signal=None))
        await asyncio.wait_for(task, timeout=5)

        assert transport.closed
        assert "exited with code 0" in transport.output
        assert bridge.session.id not in registry


class TestInput:
    @pytest.mark.asyncio
    async def test_allowed_line_reaches_shell(self, registry, fake_supervisor):
        transport = FakeTransport()
        transport.feed("ls", "\r")
        transport.disconnect()
        await _run(TerminalBridge(transport, registry))

        assert fake_supervisor.writes == [b"ls\r"]
        assert "ls" in transport.output

    @pytest.mark.asyncio
    async def test_denied_line_is_never_written(self, registry, fake_supervisor):
        transport = FakeTransport()
        transport.feed("c", "d", " ", ".", ".", "\r")
        transport.disconnect()
        await _run(TerminalBridge(transport, registry, prompt="$ "))

        assert fake_supervisor.writes == []
        assert "[blocked]" in transport.output
        assert transport.output.endswith("\r\n$ ")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "frames",
        [
            ["cd .\\\r", ".\r"],
            ["mou\\\r", "nt\r"],
            ["cd${IFS}..\r"],
        ],
    )
    async def test_continued_forbidden_command_is_never_written(self, registry, fake_supervisor, frames):
        transport = FakeTransport()
        transport.feed(*frames)
        transport.disconnect()
        await _run(TerminalBridge(transport, registry, prompt="$ "))

        assert fake_supervisor.writes == []
        assert "[blocked]" in transport.output

    @pytest.mark.asyncio
    async def test_continued_line_is_written_joined(self, registry, fake_supervisor):
        transport = FakeTransport()
        transport.feed("echo a\\\r", "b\r")
        transport.disconnect()
        await _run(TerminalBridge(transport, registry))

        assert fake_supervisor.writes == [b"echo ab\r"]

    @pytest.mark.asyncio
    async def test_binary_frames_are_input(self, registry, fake_supervisor):
        transport = FakeTransport()
        transport.feed(b"pwd\r")
        transport.disconnect()
        await _run(TerminalBridge(transport, registry))

        assert fake_supervisor.writes == [b"pwd\r"]

    @pytest.mark.asyncio
    async def test_ctrl_c_is_forwarded_immediately(self, registry, fake_supervisor):
        transport = FakeTransport()
        transport.feed("sleep 10\r", "\x03")
        transport.disconnect()
        await _run(TerminalBridge(transport, registry))

        assert fake_supervisor.writes == [b"sleep 10\r", b"\x03"]

    @pytest.mark.asyncio
    async def test_resize_is_clamped(self, registry, fake_supervisor):
        transport = FakeTransport()
        transport.feed(json.dumps({"type": "resize", "cols": 9999, "rows": 0}))
        transport.disconnect()
        await _run(TerminalBridge(transport, registry))

        assert len(fake_supervisor.resizes) == 1
        assert (fake_supervisor.resizes[0].cols, fake_supervisor.resizes[0].rows) == (500, 1)
        assert fake_supervisor.writes == []

    @pytest.mark.asyncio
    async def test_malformed_resize_is_data(self, registry, fake_supervisor):
        transport = FakeTransport()
        transport.feed('{"type": "resize", "cols": "wide"}', "\r")
        transport.disconnect()
        await _run(TerminalBridge(transport, registry))

        assert fake_supervisor.resizes == []
        assert fake_supervisor.writes == [b'{"type": "resize", "cols": "wide"}\r']


class TestOutput:
    @pytest.mark.asyncio
    async def test_output_forwarded_and_newlines_coalesced(self, registry, fake_supervisor):
        transport = FakeTransport()
        bridge = TerminalBridge(transport, registry)
        task = asyncio.create_task(bridge.run())
        await _until_streaming(bridge)

        pty = bridge.session.pty
        await fake_supervisor.emit(pty, b"file.txt\r\n")
        await fake_supervisor.emit(pty, b"\r\n")
        await fake_supervisor.emit(pty, b"\r\n")
        await fake_supervisor.emit(pty, "h\xc3".encode("latin-1"))
        await fake_supervisor.emit(pty, b"\xa9")

        transport.disconnect()
        await asyncio.wait_for(task, timeout=5)

        assert transport.sent[1:] == ["file.txt\r\n", "\r\n", "h", "é"]


class TestFallback:
    @pytest.mark.asyncio
    async def test_blocked_session_reports_unavailable(self, terminalhub_root, fake_supervisor):
        registry = SessionRegistry(
            workspaces_root=terminalhub_root / "workspaces",
            supervisor=fake_supervisor,
            sandbox_enabled=False,
            allow_direct_shell=False,
        )
        transport = FakeTransport()
        transport.feed("ls\r", json.dumps({"type": "resize", "cols": 100, "rows": 40}), "pwd\r")
        transport.disconnect()
        bridge = TerminalBridge(transport, registry)
        await _run(bridge)

        assert bridge.fallback
        assert bridge.session.mode == SessionMode.BLOCKED
        assert transport.sent[1] == UNAVAILABLE_BANNER
        assert transport.sent[2:] == [UNAVAILABLE_REPLY, UNAVAILABLE_REPLY]
        assert fake_supervisor.spawned == []
        assert fake_supervisor.resizes == []
        assert transport.closed

    @pytest.mark.asyncio
    async def test_joiner_closes_when_owner_ends_blocked_session(self, terminalhub_root, fake_supervisor):
        registry = SessionRegistry(
            workspaces_root=terminalhub_root / "workspaces",
            supervisor=fake_supervisor,
            sandbox_enabled=False,
            allow_direct_shell=False,
        )
        owner_transport = FakeTransport()
        owner = TerminalBridge(owner_transport, registry)
        owner_task = asyncio.create_task(owner.run())
        await _until_streaming(owner)

        joiner_transport = FakeTransport()
        joiner = TerminalBridge(joiner_transport, registry, requested_session_id=owner.session.id)
        joiner_task = asyncio.create_task(joiner.run())
        await _until_streaming(joiner)
        assert joiner.fallback
        assert owner.session.connections == 2

        owner_transport.disconnect()
        await asyncio.wait_for(owner_task, timeout=5)
        await asyncio.wait_for(joiner_task, timeout=5)

        assert owner.session.id not in registry
        assert joiner.state == BridgeState.CLOSED
        assert joiner_transport.closed
        assert joiner_transport.sent[-1] == SESSION_ENDED_NOTICE
        assert owner.session.connections == 2

    @pytest.mark.asyncio
    async def test_deleted_blocked_session_closes_its_owner(self, terminalhub_root, fake_supervisor):
        registry = SessionRegistry(
            workspaces_root=terminalhub_root / "workspaces",
            supervisor=fake_supervisor,
            sandbox_enabled=False,
            allow_direct_shell=False,
        )
        transport = FakeTransport()
        bridge = TerminalBridge(transport, registry)
        task = asyncio.create_task(bridge.run())
        await _until_streaming(bridge)

        assert await registry.destroy(bridge.session.id) is True
        await asyncio.wait_for(task, timeout=5)

        assert transport.closed
        assert SESSION_ENDED_NOTICE in transport.sent
