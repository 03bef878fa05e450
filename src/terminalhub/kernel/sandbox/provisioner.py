"""Sandbox Provisioner - per-session container isolation.

Each sandboxed session gets its own disposable container:
- uniquely named after the session id
- the session workspace bind-mounted as the working directory
- no network, dropped capabilities, bounded memory and CPU
- removed unconditionally when the session is torn down

The Docker SDK is blocking, so every call runs in the default executor and
never stalls other sessions on the event loop.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import time
from pathlib import Path
from typing import Any, Callable, Optional

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from terminalhub.config import settings
from terminalhub.domain.errors import SandboxUnavailableError
from terminalhub.domain.session import SandboxHandle

logger = structlog.get_logger()

SESSION_LABEL = "terminalhub.session"

# Container security configuration
CONTAINER_CONFIG: dict[str, Any] = {
    "cpu_period": 100000,
    "security_opt": ["no-new-privileges"],
    "cap_drop": ["ALL"],
    "pids_limit": 256,
}

_READY_POLL_INTERVAL = 0.2


class SandboxProvisioner:
    """Creates and destroys one container sandbox per session.

    Usage:
        provisioner = SandboxProvisioner()
        handle = await provisioner.provision(session.id, session.workspace_dir)
        ...
        await provisioner.teardown(handle)
    """

    def __init__(
        self,
        *,
        image: Optional[str] = None,
        workdir: Optional[str] = None,
        setup_command: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client_factory: Optional[Callable[[], Any]] = None,
        docker_binary: Optional[str] = None,
    ):
        """Initialize the provisioner.

        Args:
            image: Container image, default settings.sandbox_image
            workdir: Workspace mount point inside the container
            setup_command: Optional toolchain install command run once as root
            timeout_seconds: Bound on the whole provisioning sequence
            client_factory: Returns a Docker client, default docker.from_env
            docker_binary: CLI used by the pty layer for `exec`; must be on PATH
        """
        self.image = image or settings.sandbox_image
        self.workdir = workdir or settings.sandbox_workdir
        self.setup_command = setup_command if setup_command is not None else settings.sandbox_setup_command
        self.timeout_seconds = timeout_seconds or settings.sandbox_provision_timeout_seconds
        self.docker_binary = docker_binary or settings.sandbox_docker_binary
        self._client_factory = client_factory or docker.from_env
        self._client: Any = None

    @property
    def client(self) -> Any:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def container_name(self, session_id: str) -> str:
        return f"{settings.sandbox_name_prefix}-{session_id}"

    async def provision(self, session_id: str, workspace_dir: Path) -> SandboxHandle:
        """Start a sandbox for `session_id` and wait until it is running.

        Raises:
            SandboxUnavailableError: runtime missing, start failure or timeout
        """
        loop = asyncio.get_running_loop()
        name = self.container_name(session_id)
        workspace = Path(workspace_dir).resolve()

        if shutil.which(self.docker_binary) is None:
            raise SandboxUnavailableError(f"{self.docker_binary} CLI not found on PATH")

        started = time.monotonic()
        start_future = loop.run_in_executor(
            None, self._start_container, session_id, name, workspace
        )
        try:
            container = await asyncio.wait_for(
                asyncio.shield(start_future),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error("sandbox_provision_timeout", name=name, timeout=self.timeout_seconds)
            # The blocking start keeps running in its thread; remove whatever it creates.
            start_future.add_done_callback(
                lambda done: self._discard_late_start(loop, done, name)
            )
            raise SandboxUnavailableError(
                f"sandbox did not become ready within {self.timeout_seconds}s"
            ) from exc
        except (SandboxUnavailableError, DockerException, OSError) as exc:
            logger.warning("sandbox_provision_failed", name=name, error=str(exc))
            try:
                await loop.run_in_executor(None, self._remove_container, name)
            except (DockerException, OSError) as cleanup_exc:
                logger.debug("sandbox_cleanup_skipped", name=name, error=str(cleanup_exc))
            if isinstance(exc, SandboxUnavailableError):
                raise
            raise SandboxUnavailableError(f"sandbox provisioning failed: {exc}") from exc

        handle = SandboxHandle(
            sandbox_id=container.id,
            session_id=session_id,
            mounted_workspace=workspace,
            container_name=name,
            workdir=self.workdir,
        )
        logger.info(
            "sandbox_provisioned",
            name=name,
            container_id=str(container.id)[:12],
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return handle

    def _start_container(self, session_id: str, name: str, workspace: Path) -> Any:
        """Create, start and wait for the container (blocking operation)."""
        deadline = time.monotonic() + self.timeout_seconds
        try:
            container = self.client.containers.run(
                self.image,
                command=["sleep", "infinity"],
                name=name,
                detach=True,
                remove=False,
                init=True,
                labels={SESSION_LABEL: session_id},
                volumes={str(workspace): {"bind": self.workdir, "mode": "rw"}},
                working_dir=self.workdir,
                mem_limit=settings.sandbox_memory_limit,
                cpu_quota=settings.sandbox_cpu_quota,
                network_mode="bridge" if settings.sandbox_network_enabled else "none",
                user=f"{os.getuid()}:{os.getgid()}",
                environment={"HOME": self.workdir},
                **CONTAINER_CONFIG,
            )
        except ImageNotFound as exc:
            raise SandboxUnavailableError(f"sandbox image not found: {self.image}") from exc

        while True:
            container.reload()
            status = getattr(container, "status", "")
            if status == "running":
                break
            if status in ("exited", "dead"):
                raise SandboxUnavailableError(f"sandbox exited during start (status={status})")
            if time.monotonic() >= deadline:
                raise SandboxUnavailableError("sandbox did not reach running state")
            time.sleep(_READY_POLL_INTERVAL)

        if self.setup_command:
            exit_code, output = container.exec_run(
                ["/bin/sh", "-c", self.setup_command],
                user="root",
            )
            if exit_code != 0:
                tail = (output or b"")[-400:].decode("utf-8", errors="replace")
                raise SandboxUnavailableError(
                    f"sandbox setup command failed (exit {exit_code}): {tail}"
                )
        return container

    async def teardown(self, handle: SandboxHandle) -> None:
        """Stop and remove the sandbox; already-removed sandboxes are fine."""
        loop = asyncio.get_running_loop()
        try:
            removed = await loop.run_in_executor(None, self._remove_container, handle.sandbox_id)
        except APIError as exc:
            logger.error("sandbox_teardown_failed", name=handle.container_name, error=str(exc))
            raise
        if removed:
            logger.info("sandbox_removed", name=handle.container_name)
        else:
            logger.debug("sandbox_already_removed", name=handle.container_name)

    def _remove_container(self, ref: str) -> bool:
        """Force-remove a container by id or name (blocking operation)."""
        try:
            container = self.client.containers.get(ref)
        except NotFound:
            return False
        try:
            container.remove(force=True)
        except NotFound:
            return False
        return True

    def _discard_late_start(self, loop: asyncio.AbstractEventLoop, done: asyncio.Future, name: str) -> None:
        if not done.cancelled() and done.exception() is not None:
            logger.debug("sandbox_late_start_failed", name=name, error=str(done.exception()))
        loop.run_in_executor(None, self._remove_quietly, name)

    def _remove_quietly(self, ref: str) -> None:
        try:
            self._remove_container(ref)
        except (DockerException, OSError) as exc:
            logger.warning("sandbox_remove_failed", name=ref, error=str(exc))

    async def cleanup_orphans(self) -> int:
        """Remove sandboxes left behind by a previous process."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._remove_labelled)
        except (DockerException, OSError) as exc:
            logger.debug("sandbox_orphan_scan_skipped", error=str(exc))
            return 0

    def _remove_labelled(self) -> int:
        removed = 0
        for container in self.client.containers.list(all=True, filters={"label": SESSION_LABEL}):
            try:
                container.remove(force=True)
                removed += 1
            except NotFound:
                continue
        if removed:
            logger.info("sandbox_orphans_removed", count=removed)
        return removed


# Global provisioner instance
_default_provisioner: Optional[SandboxProvisioner] = None


def get_sandbox_provisioner() -> SandboxProvisioner:
    """Get the global sandbox provisioner (singleton)."""
    global _default_provisioner
    if _default_provisioner is None:
        _default_provisioner = SandboxProvisioner()
    return _default_provisioner
