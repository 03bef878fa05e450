"""Kernel Security - deny-list filtering of assembled terminal input lines."""

from terminalhub.kernel.security.command_filter import (
    DEFAULT_POLICY,
    CommandLineFilter,
    DenyRule,
    FilterDecision,
    FilterPolicy,
)

__all__ = [
    "DEFAULT_POLICY",
    "CommandLineFilter",
    "DenyRule",
    "FilterDecision",
    "FilterPolicy",
]
