"""Path guardrails keeping every workspace beneath the runtime root.

Workspace directories are named after session ids and are deleted
recursively at teardown, so every path handed to the filesystem layer is
resolved (symlinks included) and checked against its root first.
"""

from __future__ import annotations

import re
from pathlib import Path


# Session ids double as workspace directory names.
_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]{7,127}$")


class InvalidArtifactPathError(ValueError):
    """Raised when a path escapes the configured TerminalHub root."""


def normalize_path(path: str | Path) -> Path:
    raw = str(path or "").strip()
    if not raw:
        raise InvalidArtifactPathError("path is required")
    return Path(raw).expanduser().resolve(strict=False)


def ensure_within_root(root: str | Path, path: str | Path) -> Path:
    """Resolve `path` and require it to be `root` or beneath it."""
    root_path = normalize_path(root)
    candidate = normalize_path(path)
    if candidate != root_path and root_path not in candidate.parents:
        raise InvalidArtifactPathError(f"path escapes root: {candidate}")
    return candidate


def safe_join(root: str | Path, *parts: str) -> Path:
    base = normalize_path(root)
    return ensure_within_root(base, base.joinpath(*parts))


def validate_session_id(session_id: str) -> str:
    value = str(session_id or "").strip()
    if not _SESSION_ID_PATTERN.fullmatch(value):
        raise ValueError(f"invalid session_id: {session_id!r}")
    return value


def session_workspace(workspaces_root: str | Path, session_id: str) -> Path:
    """Workspace directory of one session, strictly below the workspaces root.

    Raises:
        ValueError: malformed session id
        InvalidArtifactPathError: the directory would not be a direct child
    """
    root = normalize_path(workspaces_root)
    workspace = safe_join(root, validate_session_id(session_id))
    if workspace.parent != root:
        raise InvalidArtifactPathError(f"workspace is not a direct child of {root}: {workspace}")
    return workspace
