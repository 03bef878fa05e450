"""Session Registry - process-wide table of live terminal sessions.

Owns creation and teardown ordering for every session:

    create:   workspace dir -> sandbox (optional) -> pty
    destroy:  kill pty -> remove sandbox -> delete workspace -> drop entry

The session map is the only state shared across connections. Map mutations
happen under one registry lock; provisioning and teardown of a session run
under that session's own lock, so sessions never wait on each other.
"""

from __future__ import annotations

import asyncio
import secrets
import shutil
from pathlib import Path
from typing import Optional

import structlog

from terminalhub.config import settings
from terminalhub.domain.errors import (
    HandleNotAliveError,
    InvalidSessionIdError,
    ProcessExitedUnexpectedly,
    SandboxUnavailableError,
    SessionNotFoundError,
)
from terminalhub.domain.session import Session, SessionMode, SessionState, TerminalDimensions
from terminalhub.infrastructure.storage.path_guard import (
    InvalidArtifactPathError,
    ensure_within_root,
    normalize_path,
    session_workspace,
)
from terminalhub.kernel.pty.supervisor import ExitStatus, PtyHandle, PtySupervisor
from terminalhub.kernel.sandbox.provisioner import SandboxProvisioner, get_sandbox_provisioner
from terminalhub.kernel.sandbox.targets import DirectTarget, ExecutionTarget, SandboxedTarget

logger = structlog.get_logger()


def new_session_id() -> str:
    """Unguessable id; also used as the workspace directory name."""
    return secrets.token_hex(16)


class SessionRegistry:
    """Maps session ids to their pty, sandbox handle and workspace.

    Usage:
        registry = SessionRegistry()
        session, created = await registry.attach(requested_id)
        await registry.start(session)
        ...
        await registry.destroy(session.id)
    """

    def __init__(
        self,
        *,
        workspaces_root: Optional[Path] = None,
        provisioner: Optional[SandboxProvisioner] = None,
        supervisor: Optional[PtySupervisor] = None,
        sandbox_enabled: Optional[bool] = None,
        allow_direct_shell: Optional[bool] = None,
    ):
        """Initialize the registry.

        Args:
            workspaces_root: Parent of all session workspaces, default settings.workspaces_path
            provisioner: Sandbox provisioner, created lazily when sandboxing is on
            supervisor: PTY supervisor
            sandbox_enabled: Process-wide sandbox switch, default from settings
            allow_direct_shell: Permit a restricted local shell when no sandbox is available
        """
        self.workspaces_root = normalize_path(workspaces_root or settings.workspaces_path)
        self.sandbox_enabled = settings.sandbox_enabled if sandbox_enabled is None else sandbox_enabled
        self.allow_direct_shell = (
            settings.allow_direct_shell if allow_direct_shell is None else allow_direct_shell
        )
        self._provisioner = provisioner
        self.supervisor = supervisor or PtySupervisor()

        self._sessions: dict[str, Session] = {}
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._teardowns: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    @property
    def provisioner(self) -> SandboxProvisioner:
        if self._provisioner is None:
            self._provisioner = get_sandbox_provisioner()
        return self._provisioner

    # ----- lookup ------------------------------------------------------

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def list_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def get(self, session_id: str) -> Session:
        """Return a live session.

        Raises:
            SessionNotFoundError: unknown id or session already tearing down
        """
        session = self._sessions.get(session_id)
        if session is None or not session.active:
            raise SessionNotFoundError(f"session not found: {session_id}")
        return session

    def require_pty(self, session_id: str) -> PtyHandle:
        """Return the live pty of a session.

        Raises:
            SessionNotFoundError: no such session
            HandleNotAliveError: session has no running shell
        """
        session = self.get(session_id)
        if session.pty is None or not session.pty.alive:
            raise HandleNotAliveError(f"session {session_id} has no live terminal")
        return session.pty

    # ----- creation ----------------------------------------------------

    def _workspace_for(self, session_id: str) -> Path:
        try:
            return session_workspace(self.workspaces_root, session_id)
        except (ValueError, InvalidArtifactPathError) as exc:
            raise InvalidSessionIdError(str(exc)) from exc

    def _resolve_locked(self, session_id: Optional[str]) -> tuple[Session, bool]:
        if session_id:
            existing = self._sessions.get(session_id)
            if existing is not None and existing.active:
                return existing, False

        new_id = new_session_id()
        while new_id in self._sessions:
            new_id = new_session_id()
        workspace = self._workspace_for(new_id)
        workspace.mkdir(parents=True, exist_ok=True)

        session = Session(id=new_id, workspace_dir=workspace)
        self._sessions[new_id] = session
        self._session_locks[new_id] = asyncio.Lock()
        logger.info(
            "session_created",
            session_id=new_id,
            requested_id=session_id,
            workspace=str(workspace),
        )
        return session, True

    async def get_or_create(self, session_id: Optional[str] = None) -> Session:
        """Return the live session for `session_id`, or register a fresh one.

        Unknown or absent ids never name the new session: a fresh
        unguessable id is allocated instead.
        """
        async with self._lock:
            session, _ = self._resolve_locked(session_id)
            return session

    async def attach(self, session_id: Optional[str] = None) -> tuple[Session, bool]:
        """Resolve a session for a new connection.

        Returns:
            (session, created) where `created` marks the owning connection
        """
        async with self._lock:
            session, created = self._resolve_locked(session_id)
            session.connections += 1
            return session, created

    async def detach(self, session: Session) -> None:
        async with self._lock:
            if session.active and session.connections > 0:
                session.connections -= 1

    async def start(
        self,
        session: Session,
        dimensions: Optional[TerminalDimensions] = None,
    ) -> Session:
        """Provision the session's execution target and spawn its shell.

        Idempotent: a session is started at most once, so concurrent callers
        share a single pty. Sandbox or spawn failures end in BLOCKED mode
        rather than an exception.
        """
        lock = self._session_locks.get(session.id)
        if lock is None:
            raise SessionNotFoundError(f"session not found: {session.id}")

        async with lock:
            if session.mode != SessionMode.PENDING or not session.active:
                return session

            target = await self._select_target(session)
            if target is None:
                session.mode = SessionMode.BLOCKED
                logger.warning("session_blocked", session_id=session.id)
                return session
            if not session.active:
                return session

            try:
                handle = await self.supervisor.spawn(session, target, dimensions)
            except OSError as exc:
                logger.error(
                    "pty_spawn_failed",
                    session_id=session.id,
                    mode=target.describe(),
                    error=str(exc),
                )
                session.mode = SessionMode.BLOCKED
                return session

            session.pty = handle
            session.target = target
            session.mode = target.mode
            self.supervisor.on_exit(handle, self._exit_listener(session.id))
            return session

    async def _select_target(self, session: Session) -> Optional[ExecutionTarget]:
        if self.sandbox_enabled:
            try:
                sandbox = await self.provisioner.provision(session.id, session.workspace_dir)
            except SandboxUnavailableError as exc:
                logger.warning("sandbox_unavailable", session_id=session.id, error=str(exc))
            else:
                session.sandbox = sandbox
                return SandboxedTarget(session, sandbox)

        if self.allow_direct_shell:
            return DirectTarget(session)
        return None

    def _exit_listener(self, session_id: str):
        async def on_exit(status: ExitStatus) -> None:
            if not status.killed:
                # Treated exactly like a kill for teardown purposes.
                exc = ProcessExitedUnexpectedly(session_id, status.exit_code, status.signal)
                logger.info(
                    "session_process_exited",
                    session_id=session_id,
                    exit_code=exc.exit_code,
                    signal=exc.signal,
                    detail=str(exc),
                )
            await self.destroy(session_id)

        return on_exit

    # ----- teardown ----------------------------------------------------

    async def destroy(self, session_id: str) -> bool:
        """Tear a session down; unknown ids are a no-op.

        Concurrent calls for one id run the teardown steps once: later
        callers wait for the first teardown and return False.

        Returns:
            True if this call performed the teardown
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            pending = self._teardowns.get(session_id)
            first = pending is None
            if first:
                session.state = SessionState.CLOSING
                session.ended.set()
                pending = asyncio.create_task(self._teardown(session))
                self._teardowns[session_id] = pending

        # Teardown completes even if the caller is cancelled.
        await asyncio.shield(pending)
        return first

    async def _teardown(self, session: Session) -> None:
        lock = self._session_locks.get(session.id) or asyncio.Lock()
        async with lock:
            if session.pty is not None:
                try:
                    await self.supervisor.kill(session.pty)
                except Exception as exc:
                    self._log_step_failure(session, "kill_pty", exc)

            if session.sandbox is not None:
                try:
                    await self.provisioner.teardown(session.sandbox)
                except Exception as exc:
                    self._log_step_failure(session, "remove_sandbox", exc)

            try:
                await asyncio.to_thread(self._remove_workspace, session.workspace_dir)
            except Exception as exc:
                self._log_step_failure(session, "delete_workspace", exc)

        async with self._lock:
            self._sessions.pop(session.id, None)
            self._session_locks.pop(session.id, None)
            self._teardowns.pop(session.id, None)
            session.state = SessionState.CLOSED

        logger.info("session_destroyed", session_id=session.id, mode=session.mode.value)

    def _remove_workspace(self, workspace: Path) -> None:
        target = ensure_within_root(self.workspaces_root, workspace)
        if target == self.workspaces_root:
            raise InvalidArtifactPathError("refusing to delete the workspaces root")
        if target.exists():
            shutil.rmtree(target)

    @staticmethod
    def _log_step_failure(session: Session, step: str, exc: Exception) -> None:
        logger.error(
            "teardown_step_failed",
            session_id=session.id,
            step=step,
            error=f"{type(exc).__name__}: {exc}",
        )

    async def shutdown(self) -> None:
        """Destroy every live session (application shutdown)."""
        session_ids = list(self._sessions.keys())
        if not session_ids:
            return
        await asyncio.gather(
            *(self.destroy(session_id) for session_id in session_ids),
            return_exceptions=True,
        )
        logger.info("session_registry_shutdown", destroyed=len(session_ids))


# Global registry instance
_registry: Optional[SessionRegistry] = None


def get_session_registry() -> SessionRegistry:
    """Get the global session registry."""
    global _registry
    if _registry is None:
        _registry = SessionRegistry()
    return _registry


def reset_session_registry(registry: Optional[SessionRegistry] = None) -> None:
    """Replace the global registry (tests and application restarts)."""
    global _registry
    _registry = registry
