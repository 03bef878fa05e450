"""Kernel Sandbox - per-session container isolation and execution targets.

Each sandboxed session owns one disposable container with only its own
workspace bind-mounted; when isolation is unavailable the session degrades
to a restricted local shell or to a blocked terminal.
"""

from terminalhub.kernel.sandbox.provisioner import (
    SESSION_LABEL,
    SandboxProvisioner,
    get_sandbox_provisioner,
)
from terminalhub.kernel.sandbox.targets import (
    DirectTarget,
    ExecutionTarget,
    SandboxedTarget,
)

__all__ = [
    "SESSION_LABEL",
    "SandboxProvisioner",
    "get_sandbox_provisioner",
    "DirectTarget",
    "ExecutionTarget",
    "SandboxedTarget",
]
