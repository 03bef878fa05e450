"""Domain errors."""


class TerminalHubError(Exception):
    """Base error."""
    pass


class SessionNotFoundError(TerminalHubError):
    """No live session for the requested id."""
    pass


class InvalidSessionIdError(TerminalHubError, ValueError):
    """Session id is malformed and cannot name a workspace."""
    pass


class SandboxUnavailableError(TerminalHubError):
    """Isolation runtime missing, or provisioning failed or timed out."""
    pass


class HandleNotAliveError(TerminalHubError):
    """Write or resize on a pseudo-terminal that has been killed or has exited."""
    pass


class ProcessExitedUnexpectedly(TerminalHubError):
    """Shell process ended on its own while its session was streaming."""

    def __init__(self, session_id: str, exit_code=None, signal=None):
        super().__init__(
            f"shell for session {session_id} exited (code={exit_code}, signal={signal})"
        )
        self.session_id = session_id
        self.exit_code = exit_code
        self.signal = signal
