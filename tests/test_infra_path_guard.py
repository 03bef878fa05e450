"""Tests for storage path guardrails."""

from pathlib import Path

import pytest

from terminalhub.infrastructure.storage.path_guard import (
    InvalidArtifactPathError,
    ensure_within_root,
    normalize_path,
    safe_join,
    session_workspace,
    validate_session_id,
)


def test_ensure_within_root_accepts_child(tmp_path):
    root = tmp_path / ".terminalhub"
    child = root / "workspaces" / "3f2a9c0d11aa"
    resolved = ensure_within_root(root, child)
    assert str(resolved).startswith(str(root.resolve()))


def test_ensure_within_root_rejects_sibling_prefix(tmp_path):
    root = tmp_path / "workspaces"
    with pytest.raises(InvalidArtifactPathError):
        ensure_within_root(root, tmp_path / "workspaces-evil" / "x")


def test_safe_join_blocks_escape(tmp_path):
    root = tmp_path / ".terminalhub"
    with pytest.raises(InvalidArtifactPathError):
        safe_join(root, "..", "outside")


def test_safe_join_blocks_symlink_escape(tmp_path):
    root = tmp_path / "workspaces"
    root.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    (root / "link").symlink_to(outside)
    with pytest.raises(InvalidArtifactPathError):
        safe_join(root, "link", "file.txt")


def test_normalize_path_requires_value():
    with pytest.raises(InvalidArtifactPathError):
        normalize_path("")
    assert normalize_path(Path(".")).is_absolute()


def test_validate_session_id():
    assert validate_session_id("9b1deb4d3b7d4bad9bdd2b0d7b3dcb6d") == "9b1deb4d3b7d4bad9bdd2b0d7b3dcb6d"
    assert validate_session_id("session_abc-123") == "session_abc-123"
    with pytest.raises(ValueError):
        validate_session_id("../bad-session")
    with pytest.raises(ValueError):
        validate_session_id("short")
    with pytest.raises(ValueError):
        validate_session_id("")


def test_session_workspace_is_direct_child(tmp_path):
    root = tmp_path / "workspaces"
    workspace = session_workspace(root, "9b1deb4d3b7d4bad9bdd2b0d7b3dcb6d")
    assert workspace.parent == root.resolve()
    assert workspace.name == "9b1deb4d3b7d4bad9bdd2b0d7b3dcb6d"


def test_session_workspace_rejects_traversal_ids(tmp_path):
    root = tmp_path / "workspaces"
    with pytest.raises(ValueError):
        session_workspace(root, "../../etc/passwd")
    with pytest.raises(ValueError):
        session_workspace(root, "abc/defghijk")
