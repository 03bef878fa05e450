"""TerminalHub - multiplexed browser terminal backend.

One pseudo-terminal per realtime connection:
- Each session owns a private workspace directory under a fixed root
- Shells run inside a disposable container sandbox when available
- Input is assembled into lines and filtered before reaching the shell
- Disconnect or shell exit tears everything down in reverse order
"""

__version__ = "0.1.0"
