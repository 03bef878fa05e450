"""Runtime - session registry and lifecycle ordering."""

from terminalhub.runtime.session_registry import (
    SessionRegistry,
    get_session_registry,
    new_session_id,
    reset_session_registry,
)

__all__ = [
    "SessionRegistry",
    "get_session_registry",
    "new_session_id",
    "reset_session_registry",
]
