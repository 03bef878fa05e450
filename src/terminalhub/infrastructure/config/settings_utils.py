"""Environment parsing helpers for TERMINALHUB_* variables.

Malformed values fall back to the default and numeric values are clamped,
so a bad variable never stops the server from starting.
"""

from __future__ import annotations

import os
from typing import Callable, Sequence, TypeVar


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

N = TypeVar("N", int, float)


def parse_bool(value: object, *, default: bool = False) -> bool:
    """Parse a loose boolean value."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    raw = str(value).strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    return default


def env_str(name: str, default: str = "") -> str:
    value = os.environ.get(name)
    return default if value is None else value.strip()


def env_bool(name: str, default: bool = False) -> bool:
    return parse_bool(os.environ.get(name), default=default)


def _env_number(
    name: str,
    default: N,
    cast: Callable[[str], N],
    minimum: N | None,
    maximum: N | None,
) -> N:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        parsed = cast(value.strip())
    except ValueError:
        return default
    if minimum is not None:
        parsed = max(minimum, parsed)
    if maximum is not None:
        parsed = min(maximum, parsed)
    return parsed


def env_int(name: str, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
    return _env_number(name, default, int, minimum, maximum)


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    return _env_number(name, default, float, minimum, maximum)


def env_list(name: str, default: Sequence[str] | None = None) -> list[str]:
    """Comma-separated list, e.g. TERMINALHUB_CORS_ORIGINS."""
    value = os.environ.get(name)
    parsed = [item.strip() for item in (value or "").split(",") if item.strip()]
    return parsed or list(default or [])
