"""Domain models for TerminalHub."""

from .errors import (
    HandleNotAliveError,
    InvalidSessionIdError,
    ProcessExitedUnexpectedly,
    SandboxUnavailableError,
    SessionNotFoundError,
    TerminalHubError,
)
from .messages import ClientFrame, DataFrame, ResizeFrame, decode_client_message, session_frame
from .session import (
    SandboxHandle,
    Session,
    SessionMode,
    SessionState,
    TerminalDimensions,
)

__all__ = [
    "TerminalHubError",
    "SessionNotFoundError",
    "InvalidSessionIdError",
    "SandboxUnavailableError",
    "HandleNotAliveError",
    "ProcessExitedUnexpectedly",
    "ClientFrame",
    "DataFrame",
    "ResizeFrame",
    "decode_client_message",
    "session_frame",
    "SandboxHandle",
    "Session",
    "SessionMode",
    "SessionState",
    "TerminalDimensions",
]
