"""Execution targets: where a session's shell runs.

A target is selected once at session start and answers every
"sandbox or direct" question for the spawn path.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from terminalhub.config import settings
from terminalhub.domain.session import SandboxHandle, Session, SessionMode

# Host PATH for the shell; never inherited from the server process.
DIRECT_PATH = "/usr/local/bin:/usr/bin:/bin"
SANDBOX_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# Readline off: echo and line editing are owned by the transport bridge.
_SHELL_FLAGS = ["--noprofile", "--norc", "--noediting", "-i"]


class ExecutionTarget(ABC):
    """Describes how to launch the shell for one session."""

    mode: SessionMode

    def __init__(self, session: Session):
        self.session = session

    @abstractmethod
    def command(self) -> list[str]:
        """argv of the process attached to the pseudo-terminal."""

    @abstractmethod
    def working_dir(self) -> Path:
        """Host directory the pty child starts in."""

    @abstractmethod
    def environment(self) -> dict[str, str]:
        """Complete environment of the pty child (nothing is inherited)."""

    def describe(self) -> str:
        return self.mode.value


class DirectTarget(ExecutionTarget):
    """Restricted local shell confined to the session workspace."""

    mode = SessionMode.DIRECT

    def __init__(self, session: Session, shell: Optional[str] = None, restricted: Optional[bool] = None):
        super().__init__(session)
        self.shell = shell or settings.shell_path
        self.restricted = settings.direct_shell_restricted if restricted is None else restricted

    def command(self) -> list[str]:
        flags = list(_SHELL_FLAGS)
        if self.restricted:
            flags.insert(0, "--restricted")
        return [self.shell, *flags]

    def working_dir(self) -> Path:
        return self.session.workspace_dir

    def environment(self) -> dict[str, str]:
        workspace = str(self.session.workspace_dir)
        return {
            "TERM": settings.terminal_name,
            "HOME": workspace,
            "PATH": DIRECT_PATH,
            "PWD": workspace,
            "PS1": settings.terminal_prompt,
            "LANG": "C.UTF-8",
            "HISTFILE": "/dev/null",
        }


class SandboxedTarget(ExecutionTarget):
    """Shell executed inside the session's container via `docker exec`."""

    mode = SessionMode.SANDBOXED

    def __init__(self, session: Session, handle: SandboxHandle, docker_binary: Optional[str] = None):
        super().__init__(session)
        self.handle = handle
        self.docker_binary = docker_binary or settings.sandbox_docker_binary

    def _shell_environment(self) -> dict[str, str]:
        workdir = self.handle.workdir
        return {
            "TERM": settings.terminal_name,
            "HOME": workdir,
            "PATH": SANDBOX_PATH,
            "PWD": workdir,
            "PS1": settings.terminal_prompt,
            "LANG": "C.UTF-8",
            "HISTFILE": "/dev/null",
        }

    def command(self) -> list[str]:
        argv = [self.docker_binary, "exec", "-i", "-t", "-w", self.handle.workdir]
        for key, value in self._shell_environment().items():
            argv.extend(["-e", f"{key}={value}"])
        argv.append(self.handle.sandbox_id)
        # Container tty echoes by default; disable it before the shell starts.
        argv.extend([
            "/bin/sh",
            "-c",
            "stty -echo 2>/dev/null; command -v bash >/dev/null && exec bash "
            + " ".join(_SHELL_FLAGS)
            + "; exec sh -i",
        ])
        return argv

    def working_dir(self) -> Path:
        return self.session.workspace_dir

    def environment(self) -> dict[str, str]:
        # Environment of the local docker CLI process, not of the sandbox shell.
        env = {
            "TERM": settings.terminal_name,
            "HOME": str(self.session.workspace_dir),
            "PATH": DIRECT_PATH,
            "PWD": str(self.session.workspace_dir),
        }
        if os.environ.get("DOCKER_HOST"):
            env["DOCKER_HOST"] = os.environ["DOCKER_HOST"]
        return env
