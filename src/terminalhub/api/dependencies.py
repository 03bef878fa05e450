"""FastAPI dependencies."""

from typing import AsyncGenerator

from terminalhub.kernel.security.command_filter import CommandLineFilter
from terminalhub.runtime.session_registry import SessionRegistry, get_session_registry


async def get_session_registry_dep() -> AsyncGenerator[SessionRegistry, None]:
    """Dependency for SessionRegistry."""
    yield get_session_registry()


async def get_command_filter_dep() -> AsyncGenerator[CommandLineFilter, None]:
    """Dependency for CommandLineFilter."""
    yield CommandLineFilter()
