"""Realtime transport frames.

Client messages are decoded exactly once, at the transport boundary, into
the tagged union ``ResizeFrame | DataFrame``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Union

from terminalhub.domain.session import TerminalDimensions


@dataclass(frozen=True)
class ResizeFrame:
    cols: int
    rows: int

    @property
    def dimensions(self) -> TerminalDimensions:
        return TerminalDimensions.clamped(self.cols, self.rows)


@dataclass(frozen=True)
class DataFrame:
    data: bytes


ClientFrame = Union[ResizeFrame, DataFrame]


def _as_int(value: object) -> int | None:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def decode_client_message(payload: str | bytes) -> ClientFrame:
    """Decode one client message.

    A text message that is a JSON object with ``type == "resize"`` and
    integer ``cols``/``rows`` is a control frame. Every other payload is
    raw keystroke data.
    """
    if isinstance(payload, bytes):
        return DataFrame(payload)

    stripped = payload.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        try:
            parsed = json.loads(stripped)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and parsed.get("type") == "resize":
            cols = _as_int(parsed.get("cols"))
            rows = _as_int(parsed.get("rows"))
            if cols is not None and rows is not None:
                return ResizeFrame(cols=cols, rows=rows)
    return DataFrame(payload.encode("utf-8"))


def session_frame(session_id: str) -> str:
    """Frame announcing the session id, sent once per connection."""
    return json.dumps({"type": "session", "sessionId": session_id})
