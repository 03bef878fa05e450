"""Session model: identity, workspace and execution state of one terminal."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from terminalhub.kernel.pty.supervisor import PtyHandle
    from terminalhub.kernel.sandbox.targets import ExecutionTarget


MIN_COLS = 1
MAX_COLS = 500
MIN_ROWS = 1
MAX_ROWS = 200


class SessionMode(str, Enum):
    """How a session's shell is executed."""

    PENDING = "pending"
    SANDBOXED = "sandboxed"
    DIRECT = "direct"
    BLOCKED = "blocked"


class SessionState(str, Enum):
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class TerminalDimensions:
    """Terminal geometry, clamped to sane bounds."""

    cols: int
    rows: int

    @classmethod
    def clamped(cls, cols: int, rows: int) -> "TerminalDimensions":
        return cls(
            cols=max(MIN_COLS, min(MAX_COLS, int(cols))),
            rows=max(MIN_ROWS, min(MAX_ROWS, int(rows))),
        )


@dataclass(frozen=True)
class SandboxHandle:
    """Reference to one session's container sandbox.

    Attributes:
        sandbox_id: Container id reported by the isolation runtime
        session_id: Owning session
        mounted_workspace: Host directory bind-mounted into the sandbox
        container_name: Unique container name
        workdir: Mount point of the workspace inside the sandbox
    """

    sandbox_id: str
    session_id: str
    mounted_workspace: Path
    container_name: str
    workdir: str = "/workspace"


@dataclass
class Session:
    """One user's logical terminal.

    Mutated only by SessionRegistry. At most one PtyHandle and one
    SandboxHandle are attached at any time.
    """

    id: str
    workspace_dir: Path
    mode: SessionMode = SessionMode.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: SessionState = SessionState.ACTIVE
    sandbox: Optional[SandboxHandle] = None
    pty: Optional["PtyHandle"] = None
    target: Optional["ExecutionTarget"] = None
    connections: int = 0
    # Set once teardown begins; lets connections without a pty notice the end.
    ended: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def pty_alive(self) -> bool:
        return self.pty is not None and self.pty.alive

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.id,
            "mode": self.mode.value,
            "state": self.state.value,
            "createdAt": self.created_at.isoformat(),
            "connections": self.connections,
            "ptyAlive": self.pty_alive,
            "sandboxId": self.sandbox.sandbox_id if self.sandbox else None,
        }
