"""Line discipline between the realtime transport and the shell.

Keystrokes arrive in arbitrary fragments. They are assembled here into
complete lines so the command filter always judges a whole command; a
forbidden token split across messages is reassembled before evaluation.
The pty runs with echo off, so echo and basic line editing happen here.

A physical line ending in an unescaped backslash continues on the next one,
as in the shell. Nothing is emitted until the logical line is complete, and
the emitted line has every backslash-newline pair removed, so the filter
and the shell see the same command text.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Echo:
    """Text to show the user immediately."""
    text: str


@dataclass(frozen=True)
class Line:
    """A complete line, terminator included, awaiting the filter."""
    text: str

    @property
    def command(self) -> str:
        return self.text.rstrip("\r\n")


@dataclass(frozen=True)
class Control:
    """A control byte forwarded to the shell as-is (e.g. Ctrl-C)."""
    data: bytes


InputEvent = Union[Echo, Line, Control]

# Signals and job control act immediately and carry no command text.
_SIGNAL_CONTROLS = {
    "\x03": "^C",
    "\x1a": "^Z",
    "\x1c": "^\\",
}
_EOF = "\x04"
_ERASE = {"\x7f", "\x08"}
_KILL_LINE = "\x15"
_ESC = "\x1b"
_BELL = "\a"

MAX_LINE_LENGTH = 4096
CONTINUATION_PROMPT = "> "


def _continues(chars: list[str]) -> bool:
    """True when the line ends in an odd run of backslashes."""
    run = 0
    for char in reversed(chars):
        if char != "\\":
            break
        run += 1
    return run % 2 == 1


class LineBuffer:
    """Per-connection input line assembler.

    Usage:
        buffer = LineBuffer()
        for event in buffer.feed(b"c"):
            ...
        for event in buffer.feed(b"d ..\\r"):
            ...  # Echo(...), Line("cd ..\\r")
    """

    def __init__(self, max_line_length: int = MAX_LINE_LENGTH):
        self.max_line_length = max_line_length
        self._chars: list[str] = []
        # Earlier physical lines of a backslash-continued command.
        self._continued: list[str] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._after_cr = False
        # None, "esc", "csi" or "ss3"
        self._escape: Optional[str] = None

    @property
    def pending(self) -> str:
        return "".join(self._continued) + "".join(self._chars)

    @property
    def continuing(self) -> bool:
        return bool(self._continued)

    def clear(self) -> None:
        self._chars.clear()
        self._continued.clear()

    def feed(self, data: bytes) -> list[InputEvent]:
        events: list[InputEvent] = []
        echo: list[str] = []
        truncated = False

        def flush_echo() -> None:
            if echo:
                events.append(Echo("".join(echo)))
                echo.clear()

        for char in self._decoder.decode(data):
            if self._escape is not None:
                self._consume_escape(char)
                continue

            if char == "\n" and self._after_cr:
                self._after_cr = False
                continue
            self._after_cr = False

            if char in ("\r", "\n"):
                self._after_cr = char == "\r"
                if _continues(self._chars):
                    self._chars.pop()
                    self._continued.extend(self._chars)
                    self._chars.clear()
                    echo.append("\r\n" + CONTINUATION_PROMPT)
                    continue
                echo.append("\r\n")
                flush_echo()
                events.append(Line(self.pending + char))
                self.clear()
            elif char in _SIGNAL_CONTROLS:
                echo.append(_SIGNAL_CONTROLS[char])
                flush_echo()
                self.clear()
                events.append(Control(char.encode()))
            elif char == _EOF:
                if not self._chars and not self._continued:
                    flush_echo()
                    events.append(Control(char.encode()))
            elif char in _ERASE:
                if self._chars:
                    self._chars.pop()
                    echo.append("\b \b")
            elif char == _KILL_LINE:
                echo.append("\b \b" * len(self._chars))
                self._chars.clear()
            elif char == _ESC:
                self._escape = "esc"
            elif char == "\t" or char >= " ":
                if len(self._continued) + len(self._chars) < self.max_line_length:
                    self._chars.append(char)
                    echo.append(char)
                elif not truncated:
                    # Overflow is dropped with a single bell per message.
                    echo.append(_BELL)
                    truncated = True
            # other C0 controls are dropped

        flush_echo()
        return events

    def _consume_escape(self, char: str) -> None:
        # Client escape sequences (cursor keys, function keys) are discarded.
        if self._escape == "esc":
            if char == "[":
                self._escape = "csi"
            elif char == "O":
                self._escape = "ss3"
            else:
                self._escape = None
        elif self._escape == "csi":
            if "\x40" <= char <= "\x7e":
                self._escape = None
        else:
            self._escape = None


_PURE_NEWLINES = {b"\n", b"\r\n", b"\r"}


class OutputCoalescer:
    """Drops a pure-newline chunk that directly follows another one."""

    def __init__(self):
        self._last_was_newline = False

    def filter(self, chunk: bytes) -> Optional[bytes]:
        pure = chunk in _PURE_NEWLINES
        if pure and self._last_was_newline:
            return None
        self._last_was_newline = pure
        return chunk
