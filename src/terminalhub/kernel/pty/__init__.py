"""Kernel PTY - pseudo-terminal lifecycle for terminal sessions."""

from terminalhub.kernel.pty.supervisor import (
    ExitStatus,
    PtyHandle,
    PtySupervisor,
)

__all__ = [
    "ExitStatus",
    "PtyHandle",
    "PtySupervisor",
]
