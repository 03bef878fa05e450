"""PTY Supervisor - lifecycle of one pseudo-terminal per session.

The child (a local shell or `docker exec` into a sandbox) is started with
asyncio subprocess on the slave side of a fresh pty pair. The master side is
read through the event loop; chunks are delivered to subscribers strictly in
production order by a single pump task per handle.

The queue between reader and pump is bounded. While it is full the master
is not read at all, so a fast producer blocks on the pty instead of growing
server memory; reading resumes once the pump has drained half the queue.

Invariants:
- writes and resizes are only valid while the handle is alive
- the exit callbacks fire exactly once, whether the child was killed or
  exited on its own
- a handle is never reused after its process is gone
"""

from __future__ import annotations

import asyncio
import fcntl
import os
import pty
import signal
import struct
import termios
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from terminalhub.config import settings
from terminalhub.domain.errors import HandleNotAliveError
from terminalhub.domain.session import Session, TerminalDimensions
from terminalhub.kernel.sandbox.targets import ExecutionTarget

logger = structlog.get_logger()

_READ_CHUNK = 65536
_WRITE_RETRY_SECONDS = 0.01


@dataclass(frozen=True)
class ExitStatus:
    """How the child ended.

    Attributes:
        exit_code: Exit code, None when terminated by a signal
        signal: Terminating signal number, None on normal exit
        killed: True when the exit followed an explicit kill
    """
    exit_code: Optional[int]
    signal: Optional[int]
    killed: bool = False

    @classmethod
    def from_returncode(cls, returncode: Optional[int], killed: bool = False) -> "ExitStatus":
        if returncode is None:
            return cls(exit_code=None, signal=None, killed=killed)
        if returncode < 0:
            return cls(exit_code=None, signal=-returncode, killed=killed)
        return cls(exit_code=returncode, signal=None, killed=killed)


DataCallback = Callable[[bytes], Awaitable[None]]
ExitCallback = Callable[[ExitStatus], Awaitable[None]]


class PtyHandle:
    """The live shell process bridged to one session."""

    def __init__(
        self,
        *,
        process: asyncio.subprocess.Process,
        master_fd: int,
        dimensions: TerminalDimensions,
        owner_session_id: str,
        queue_max_chunks: int,
    ):
        self.pid = process.pid
        self.dimensions = dimensions
        self.owner_session_id = owner_session_id
        self._process = process
        self._master_fd = master_fd
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_max_chunks)
        self._data_callbacks: list[DataCallback] = []
        self._exit_callbacks: list[ExitCallback] = []
        self._write_lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()
        self._reader_attached = False
        self._reader_paused = False
        self._eof_queued = False
        self._killed = False
        self._closed = False
        self._pump_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._exit_status: Optional[ExitStatus] = None
        self._exit_fired = asyncio.Event()

    @property
    def alive(self) -> bool:
        return not self._killed and self._exit_status is None and not self._closed

    @property
    def exit_status(self) -> Optional[ExitStatus]:
        return self._exit_status

    async def wait_closed(self) -> Optional[ExitStatus]:
        """Wait until exit callbacks have run."""
        await self._exit_fired.wait()
        return self._exit_status

    def __repr__(self) -> str:
        return f"PtyHandle(pid={self.pid}, session={self.owner_session_id}, alive={self.alive})"


def _set_winsize(fd: int, dimensions: TerminalDimensions) -> None:
    winsize = struct.pack("HHHH", dimensions.rows, dimensions.cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _disable_echo(fd: int) -> None:
    attrs = termios.tcgetattr(fd)
    attrs[3] &= ~termios.ECHO
    termios.tcsetattr(fd, termios.TCSANOW, attrs)


def _acquire_controlling_tty() -> None:
    # Runs in the child between fork and exec; stdin is already the pty slave.
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtySupervisor:
    """Spawns, streams, resizes and kills pseudo-terminal processes.

    Usage:
        supervisor = PtySupervisor()
        handle = await supervisor.spawn(session, DirectTarget(session))
        supervisor.on_data(handle, send_to_client)
        supervisor.on_exit(handle, handle_exit)
        await supervisor.write(handle, b"ls\\n")
        await supervisor.kill(handle)
    """

    def __init__(
        self,
        kill_timeout_seconds: Optional[float] = None,
        queue_max_chunks: Optional[int] = None,
    ):
        self.kill_timeout_seconds = kill_timeout_seconds or settings.pty_kill_timeout_seconds
        self.queue_max_chunks = queue_max_chunks or settings.pty_output_queue_chunks

    async def spawn(
        self,
        session: Session,
        target: ExecutionTarget,
        dimensions: Optional[TerminalDimensions] = None,
    ) -> PtyHandle:
        """Start the target's command on a new pseudo-terminal.

        Args:
            session: Owning session (its workspace is the child's cwd)
            target: Execution target chosen at session start
            dimensions: Initial geometry, default from settings

        Returns:
            A live PtyHandle

        Raises:
            OSError: if the pty pair or the child process cannot be created
        """
        dims = dimensions or TerminalDimensions.clamped(
            settings.terminal_default_cols, settings.terminal_default_rows
        )
        argv = target.command()
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, dims)
            _disable_echo(slave_fd)
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(target.working_dir()),
                env=target.environment(),
                preexec_fn=_acquire_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            os.close(slave_fd)
            raise
        os.close(slave_fd)
        os.set_blocking(master_fd, False)

        handle = PtyHandle(
            process=process,
            master_fd=master_fd,
            dimensions=dims,
            owner_session_id=session.id,
            queue_max_chunks=self.queue_max_chunks,
        )
        loop = asyncio.get_running_loop()
        loop.add_reader(master_fd, self._on_readable, handle)
        handle._reader_attached = True
        handle._watch_task = asyncio.create_task(self._watch_exit(handle))

        logger.info(
            "pty_spawned",
            session_id=session.id,
            pid=handle.pid,
            mode=target.describe(),
            cols=dims.cols,
            rows=dims.rows,
        )
        return handle

    # ----- output path -------------------------------------------------

    def _on_readable(self, handle: PtyHandle) -> None:
        try:
            data = os.read(handle._master_fd, _READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave descriptor is closed
            data = b""
        if not data:
            self._queue_eof(handle)
            return
        # The reader is only attached while the queue has room.
        handle._queue.put_nowait(data)
        if handle._queue.full():
            self._pause_reader(handle)

    def _detach_reader(self, handle: PtyHandle) -> None:
        if handle._reader_attached:
            asyncio.get_running_loop().remove_reader(handle._master_fd)
            handle._reader_attached = False

    def _pause_reader(self, handle: PtyHandle) -> None:
        self._detach_reader(handle)
        handle._reader_paused = True
        logger.debug("pty_output_paused", session_id=handle.owner_session_id, pid=handle.pid)

    def _resume_reader(self, handle: PtyHandle) -> None:
        if not handle._reader_paused or handle._queue.qsize() > handle._queue.maxsize // 2:
            return
        handle._reader_paused = False
        if handle._eof_queued or handle._closed:
            return
        asyncio.get_running_loop().add_reader(handle._master_fd, self._on_readable, handle)
        handle._reader_attached = True

    def _queue_eof(self, handle: PtyHandle) -> None:
        # Reader path only: the queue has room whenever the reader runs.
        if handle._eof_queued:
            return
        self._detach_reader(handle)
        handle._eof_queued = True
        handle._queue.put_nowait(None)

    async def _end_output(self, handle: PtyHandle) -> None:
        """Queue whatever is still buffered on the master, then EOF."""
        async with handle._drain_lock:
            if handle._eof_queued:
                return
            self._detach_reader(handle)
            handle._reader_paused = False
            while not handle._closed:
                try:
                    data = os.read(handle._master_fd, _READ_CHUNK)
                except OSError:
                    break
                if not data:
                    break
                await handle._queue.put(data)
            handle._eof_queued = True
            await handle._queue.put(None)

    async def _watch_exit(self, handle: PtyHandle) -> None:
        # Background jobs may keep the slave open after the shell is gone, so
        # EOF on the master alone cannot signal exit.
        await handle._process.wait()
        self._ensure_pump(handle)
        await self._end_output(handle)

    def _ensure_pump(self, handle: PtyHandle) -> None:
        if handle._pump_task is None:
            handle._pump_task = asyncio.create_task(self._pump(handle))

    async def _pump(self, handle: PtyHandle) -> None:
        while True:
            chunk = await handle._queue.get()
            self._resume_reader(handle)
            if chunk is None:
                break
            for callback in list(handle._data_callbacks):
                try:
                    await callback(chunk)
                except Exception as exc:
                    logger.warning(
                        "pty_data_callback_failed",
                        session_id=handle.owner_session_id,
                        error=f"{type(exc).__name__}: {exc}",
                    )
        returncode = await handle._process.wait()
        await self._finish(handle, returncode)

    async def _finish(self, handle: PtyHandle, returncode: Optional[int]) -> None:
        if handle._exit_fired.is_set():
            return
        handle._exit_status = ExitStatus.from_returncode(returncode, killed=handle._killed)
        self._close_master(handle)
        logger.info(
            "pty_exited",
            session_id=handle.owner_session_id,
            pid=handle.pid,
            exit_code=handle._exit_status.exit_code,
            signal=handle._exit_status.signal,
            killed=handle._killed,
        )
        callbacks = list(handle._exit_callbacks)
        handle._exit_callbacks.clear()
        handle._data_callbacks.clear()
        handle._exit_fired.set()
        for callback in callbacks:
            try:
                await callback(handle._exit_status)
            except Exception as exc:
                logger.warning(
                    "pty_exit_callback_failed",
                    session_id=handle.owner_session_id,
                    error=f"{type(exc).__name__}: {exc}",
                )

    def _close_master(self, handle: PtyHandle) -> None:
        if handle._closed:
            return
        self._detach_reader(handle)
        handle._closed = True
        try:
            os.close(handle._master_fd)
        except OSError:
            pass

    # ----- subscriptions -----------------------------------------------

    def on_data(self, handle: PtyHandle, callback: DataCallback) -> Callable[[], None]:
        """Register an output subscriber; returns an unsubscribe function.

        Output is not buffered for late subscribers: the first registration
        starts delivery, later ones only see subsequent chunks.
        """
        handle._data_callbacks.append(callback)
        self._ensure_pump(handle)

        def unsubscribe() -> None:
            if callback in handle._data_callbacks:
                handle._data_callbacks.remove(callback)

        return unsubscribe

    def on_exit(self, handle: PtyHandle, callback: ExitCallback) -> Callable[[], None]:
        """Register a callback fired once with the ExitStatus."""
        if handle._exit_fired.is_set():
            status = handle._exit_status
            asyncio.get_running_loop().create_task(callback(status))
            return lambda: None
        handle._exit_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in handle._exit_callbacks:
                handle._exit_callbacks.remove(callback)

        return unsubscribe

    # ----- input and control -------------------------------------------

    async def write(self, handle: PtyHandle, data: bytes) -> None:
        """Forward raw bytes to the child's input.

        Raises:
            HandleNotAliveError: after kill or process exit
        """
        if not handle.alive:
            raise HandleNotAliveError(f"pty for session {handle.owner_session_id} is not alive")
        async with handle._write_lock:
            view = memoryview(data)
            while view:
                if not handle.alive:
                    raise HandleNotAliveError(
                        f"pty for session {handle.owner_session_id} is not alive"
                    )
                try:
                    written = os.write(handle._master_fd, view)
                except BlockingIOError:
                    await asyncio.sleep(_WRITE_RETRY_SECONDS)
                    continue
                except OSError as exc:
                    raise HandleNotAliveError(str(exc)) from exc
                view = view[written:]

    def resize(self, handle: PtyHandle, cols: int, rows: int) -> TerminalDimensions:
        """Apply new geometry; the latest call wins."""
        if not handle.alive:
            raise HandleNotAliveError(f"pty for session {handle.owner_session_id} is not alive")
        dims = TerminalDimensions.clamped(cols, rows)
        try:
            _set_winsize(handle._master_fd, dims)
        except OSError as exc:
            raise HandleNotAliveError(str(exc)) from exc
        handle.dimensions = dims
        return dims

    def _signal_group(self, handle: PtyHandle, sig: int) -> None:
        try:
            os.killpg(handle.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            try:
                handle._process.send_signal(sig)
            except ProcessLookupError:
                pass

    async def kill(self, handle: PtyHandle) -> Optional[ExitStatus]:
        """Terminate the child and wait for it, escalating to SIGKILL.

        Returns the ExitStatus once the process is gone, or None if it could
        not be confirmed within two timeout windows.
        """
        if handle._exit_status is not None:
            return handle._exit_status

        handle._killed = True
        self._ensure_pump(handle)
        started = time.monotonic()

        if handle._process.returncode is None:
            # Interactive shells ignore SIGTERM; SIGHUP is what a closing terminal sends.
            self._signal_group(handle, signal.SIGHUP)
            self._signal_group(handle, signal.SIGTERM)
            try:
                await asyncio.wait_for(
                    asyncio.shield(handle._process.wait()),
                    timeout=self.kill_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning("pty_kill_escalated", session_id=handle.owner_session_id, pid=handle.pid)
                self._signal_group(handle, signal.SIGKILL)
                try:
                    await asyncio.wait_for(
                        asyncio.shield(handle._process.wait()),
                        timeout=self.kill_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    logger.error("pty_kill_unconfirmed", session_id=handle.owner_session_id, pid=handle.pid)
                    return None

        # Close the master so the pump sees EOF even if grandchildren hold the slave.
        await self._end_output(handle)
        logger.debug(
            "pty_killed",
            session_id=handle.owner_session_id,
            pid=handle.pid,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return ExitStatus.from_returncode(handle._process.returncode, killed=True)
