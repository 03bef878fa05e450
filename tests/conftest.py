"""Shared fixtures: isolated runtime root, fake Docker SDK, fake pty supervisor."""

from __future__ import annotations

import asyncio
import itertools
import shutil
from typing import Any, Optional

import pytest
from docker.errors import ImageNotFound, NotFound

from terminalhub.domain.errors import HandleNotAliveError
from terminalhub.domain.session import TerminalDimensions
from terminalhub.kernel.pty.supervisor import ExitStatus
from terminalhub.runtime.session_registry import reset_session_registry

BASH = shutil.which("bash")


@pytest.fixture
def terminalhub_root(tmp_path, monkeypatch):
    """Point every runtime path at a temporary root."""
    root = (tmp_path / ".terminalhub").resolve()
    workspaces = root / "workspaces"
    workspaces.mkdir(parents=True)
    monkeypatch.setattr("terminalhub.config.settings.terminalhub_root", root)
    monkeypatch.setattr("terminalhub.config.settings.workspaces_path", workspaces)
    monkeypatch.setattr("terminalhub.config.settings.pty_kill_timeout_seconds", 1.0)
    if BASH:
        monkeypatch.setattr("terminalhub.config.settings.shell_path", BASH)
    reset_session_registry()
    yield root
    reset_session_registry()


# ----- Docker SDK doubles ---------------------------------------------------


class FakeContainer:
    def __init__(self, client: "FakeDockerClient", name: str, labels: dict, status_sequence: list[str]):
        self.client = client
        self.id = f"c{next(client.ids):011d}"
        self.name = name
        self.labels = labels
        self._statuses = list(status_sequence)
        self.status = "created"
        self.exec_calls: list[tuple[Any, dict]] = []
        self.removed = False

    def reload(self) -> None:
        if self._statuses:
            self.status = self._statuses.pop(0)

    def exec_run(self, cmd, **kwargs):
        self.exec_calls.append((cmd, kwargs))
        return self.client.exec_result

    def remove(self, force: bool = False) -> None:
        if self.removed:
            raise NotFound("container already removed")
        self.removed = True
        self.client.containers._drop(self)


class FakeContainers:
    def __init__(self, client: "FakeDockerClient"):
        self.client = client
        self.by_ref: dict[str, FakeContainer] = {}
        self.run_calls: list[tuple[str, dict]] = []

    def run(self, image: str, **kwargs) -> FakeContainer:
        self.run_calls.append((image, kwargs))
        if image in self.client.missing_images:
            raise ImageNotFound(f"No such image: {image}")
        container = FakeContainer(
            self.client,
            kwargs["name"],
            kwargs.get("labels", {}),
            self.client.status_sequence,
        )
        self.by_ref[container.id] = container
        self.by_ref[container.name] = container
        return container

    def get(self, ref: str) -> FakeContainer:
        container = self.by_ref.get(ref)
        if container is None:
            raise NotFound(f"No such container: {ref}")
        return container

    def list(self, all: bool = False, filters: Optional[dict] = None) -> list[FakeContainer]:
        label = (filters or {}).get("label")
        unique = {id(c): c for c in self.by_ref.values()}.values()
        return [c for c in unique if label is None or label in c.labels]

    def _drop(self, container: FakeContainer) -> None:
        self.by_ref.pop(container.id, None)
        self.by_ref.pop(container.name, None)

    @property
    def live(self) -> list[FakeContainer]:
        return list({id(c): c for c in self.by_ref.values()}.values())


class FakeDockerClient:
    """Stands in for docker.DockerClient in provisioner tests."""

    def __init__(self, status_sequence: Optional[list[str]] = None):
        self.ids = itertools.count(1)
        self.status_sequence = status_sequence or ["running"]
        self.missing_images: set[str] = set()
        self.exec_result: tuple[int, bytes] = (0, b"")
        self.containers = FakeContainers(self)


@pytest.fixture
def docker_client():
    return FakeDockerClient()


# ----- PTY supervisor double ------------------------------------------------


class FakePtyHandle:
    def __init__(self, session_id: str, dimensions: TerminalDimensions):
        self.pid = 4242
        self.owner_session_id = session_id
        self.dimensions = dimensions
        self.alive = True
        self.data_callbacks: list = []
        self.exit_callbacks: list = []


class FakeSupervisor:
    """Records pty traffic without spawning processes."""

    def __init__(self):
        self.spawned: list[FakePtyHandle] = []
        self.writes: list[bytes] = []
        self.resizes: list[TerminalDimensions] = []
        self.killed: list[FakePtyHandle] = []

    async def spawn(self, session, target, dimensions=None):
        await asyncio.sleep(0)
        handle = FakePtyHandle(session.id, dimensions or TerminalDimensions(80, 30))
        self.spawned.append(handle)
        return handle

    def on_data(self, handle, callback):
        handle.data_callbacks.append(callback)
        return lambda: callback in handle.data_callbacks and handle.data_callbacks.remove(callback)

    def on_exit(self, handle, callback):
        handle.exit_callbacks.append(callback)
        return lambda: callback in handle.exit_callbacks and handle.exit_callbacks.remove(callback)

    async def write(self, handle, data: bytes) -> None:
        if not handle.alive:
            raise HandleNotAliveError("not alive")
        self.writes.append(data)

    def resize(self, handle, cols: int, rows: int) -> TerminalDimensions:
        if not handle.alive:
            raise HandleNotAliveError("not alive")
        dims = TerminalDimensions.clamped(cols, rows)
        handle.dimensions = dims
        self.resizes.append(dims)
        return dims

    async def kill(self, handle):
        if not handle.alive:
            return None
        self.killed.append(handle)
        handle.alive = False
        status = ExitStatus(exit_code=None, signal=1, killed=True)
        # Exit callbacks run after kill returns, as with a real pump task.
        asyncio.get_running_loop().create_task(self.finish(handle, status))
        return status

    async def emit(self, handle, chunk: bytes) -> None:
        for callback in list(handle.data_callbacks):
            await callback(chunk)

    async def finish(self, handle, status: ExitStatus) -> None:
        handle.alive = False
        await asyncio.sleep(0)
        callbacks = list(handle.exit_callbacks)
        handle.exit_callbacks.clear()
        handle.data_callbacks.clear()
        for callback in callbacks:
            await callback(status)


@pytest.fixture
def fake_supervisor():
    return FakeSupervisor()
