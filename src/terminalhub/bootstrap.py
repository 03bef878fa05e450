"""Bootstrap - initialize the TerminalHub environment.

Creates:
- .terminalhub/ directory structure
- an empty workspaces root (stale session workspaces are purged)

When sandboxing is on, containers left behind by a previous process are
removed as well.
"""

import shutil

import structlog

from terminalhub.config import settings
from terminalhub.infrastructure.storage.path_guard import ensure_within_root
from terminalhub.runtime.session_registry import get_session_registry

logger = structlog.get_logger()


async def bootstrap():
    """Initialize the TerminalHub environment.

    This should be called once at application startup.
    It's safe to call multiple times (idempotent).
    """
    settings.setup_logging()
    logger.info("bootstrapping_terminalhub", root=str(settings.terminalhub_root))

    # 1. Ensure directory structure
    settings.ensure_directories()

    # 2. No session survives a restart, so neither does its workspace
    purged = purge_stale_workspaces()

    # 3. Orphaned sandboxes
    orphans = 0
    registry = get_session_registry()
    if registry.sandbox_enabled:
        orphans = await registry.provisioner.cleanup_orphans()

    logger.info("bootstrap_complete", purged_workspaces=purged, removed_sandboxes=orphans)


def purge_stale_workspaces() -> int:
    """Delete workspace directories that no live session owns."""
    root = settings.workspaces_path
    if not root.exists():
        return 0

    live = set()
    registry = get_session_registry()
    for session in registry.list_sessions():
        live.add(session.id)

    purged = 0
    for entry in root.iterdir():
        if entry.name in live:
            continue
        try:
            if entry.is_symlink() or not entry.is_dir():
                entry.unlink()
            else:
                shutil.rmtree(ensure_within_root(root, entry))
            purged += 1
        except (OSError, ValueError) as exc:
            logger.warning("workspace_purge_failed", path=str(entry), error=str(exc))
    return purged
