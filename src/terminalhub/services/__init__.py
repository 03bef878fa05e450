"""Services layer - per-connection terminal orchestration.

Exports are resolved lazily so importing `terminalhub.services.line_discipline`
does not pull in the registry and the pty stack.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

_EXPORTS = {
    "LineBuffer": ("terminalhub.services.line_discipline", "LineBuffer"),
    "OutputCoalescer": ("terminalhub.services.line_discipline", "OutputCoalescer"),
    "Echo": ("terminalhub.services.line_discipline", "Echo"),
    "Line": ("terminalhub.services.line_discipline", "Line"),
    "Control": ("terminalhub.services.line_discipline", "Control"),
    "TerminalBridge": ("terminalhub.services.terminal_bridge", "TerminalBridge"),
    "BridgeState": ("terminalhub.services.terminal_bridge", "BridgeState"),
    "Transport": ("terminalhub.services.terminal_bridge", "Transport"),
}

__all__ = list(_EXPORTS.keys())


def __getattr__(name: str) -> Any:
    target = _EXPORTS.get(name)
    if target is None:
        raise AttributeError(f"module 'terminalhub.services' has no attribute {name!r}")

    module_name, attr_name = target
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(__all__))
