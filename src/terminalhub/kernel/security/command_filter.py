"""Command line filtering for terminal input.

Evaluates one complete, newline-terminated input line against a static
deny-list before it reaches a shell. Rules are evaluated independently;
any match denies the line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class DenyRule:
    """A single compiled deny pattern.

    Attributes:
        name: Stable rule identifier used in logs
        category: Rule family (traversal, absolute_path, symlink, dangerous)
        pattern: Compiled regular expression searched in the line
        reason: Message shown to the user on denial
    """
    name: str
    category: str
    pattern: re.Pattern
    reason: str


def _rule(name: str, category: str, pattern: str, reason: str) -> DenyRule:
    return DenyRule(name, category, re.compile(pattern, re.IGNORECASE), reason)


# Start of a command word: line start, or after a separator / subshell opener.
_CMD = r"(?:^|[;&|(`]|\$\()\s*(?:\w+=\S*\s+)*"

TRAVERSAL_RULES = (
    _rule(
        "cd_parent",
        "traversal",
        r"\bcd\s+['\"]?\.\.",
        "changing to a parent directory is not allowed",
    ),
    _rule(
        "cd_root",
        "traversal",
        r"\bcd\s+['\"]?/",
        "changing to an absolute directory is not allowed",
    ),
    _rule(
        "cd_home",
        "traversal",
        r"\bcd\s+['\"]?~",
        "changing to a home directory is not allowed",
    ),
    _rule(
        "parent_reference",
        "traversal",
        r"(?:^|[\s=:'\"<>|;&(`])\.\.(?:/|\s|$|['\";|&)])",
        "parent directory references are not allowed",
    ),
    _rule(
        "other_user_home",
        "traversal",
        r"(?:^|[\s=:'\"<>|;&(`])~[A-Za-z_]",
        "other users' home directories are not accessible",
    ),
)

ABSOLUTE_PATH_RULES = (
    _rule(
        "absolute_path",
        "absolute_path",
        r"(?:^|[\s='\"<>|;&(`]|:(?!//))/",
        "absolute paths are not allowed; stay inside the workspace",
    ),
)

SYMLINK_RULES = (
    _rule(
        "ln_symbolic",
        "symlink",
        _CMD + r"ln\s+(?:-[A-Za-z]*\s+)*(?:-[A-Za-z]*s[A-Za-z]*|--symbolic)\b",
        "creating symbolic links is not allowed",
    ),
    _rule(
        "symlink_syscall_wrappers",
        "symlink",
        r"\b(?:symlink|os\.symlink|symlinkSync)\s*\(",
        "creating symbolic links is not allowed",
    ),
)

DANGEROUS_RULES = (
    _rule("rm_root", "dangerous", r"\brm\s+(?:-[A-Za-z]+\s+)*-[A-Za-z]*[rR][A-Za-z]*\s+(?:-[A-Za-z]+\s+)*['\"]?[/~]", "recursive removal outside the workspace is not allowed"),
    _rule("rm_no_preserve_root", "dangerous", r"--no-preserve-root", "recursive removal outside the workspace is not allowed"),
    _rule("sudo", "dangerous", _CMD + r"(?:sudo|doas|pkexec)\b", "privilege escalation is not allowed"),
    _rule("su", "dangerous", _CMD + r"su(?:\s|$)", "privilege escalation is not allowed"),
    _rule("mount", "dangerous", _CMD + r"(?:u?mount|chroot|nsenter|unshare|pivot_root)\b", "mount and namespace commands are not allowed"),
    _rule("fork_bomb", "dangerous", r"(\w+|:)\s*\(\s*\)\s*\{[^}]*\1\s*\|\s*\1\s*&", "fork bombs are not allowed"),
    _rule("mkfs", "dangerous", r"\bmkfs(?:\.\w+)?\b", "filesystem commands are not allowed"),
    _rule("fdisk", "dangerous", r"\b(?:fdisk|sfdisk|parted|wipefs)\b", "filesystem commands are not allowed"),
    _rule("dd_device", "dangerous", r"\bdd\b.*\bof=/dev/", "writing to devices is not allowed"),
    _rule("chmod_root", "dangerous", r"\bchmod\s+-R\s+\d{3,4}\s+/", "changing permissions outside the workspace is not allowed"),
    _rule("chown", "dangerous", _CMD + r"chown\b", "changing file ownership is not allowed"),
    _rule("power", "dangerous", _CMD + r"(?:shutdown|reboot|halt|poweroff|init\s+[06])\b", "power management commands are not allowed"),
    _rule("kill_all", "dangerous", r"\bkill\s+(?:-\w+\s+)*-1\b|\bkillall\b|\bpkill\b", "signalling foreign processes is not allowed"),
    _rule("pipe_to_shell", "dangerous", r"\b(?:curl|wget)\b.*\|\s*(?:ba|z|da)?sh\b", "piping downloads into a shell is not allowed"),
    _rule("eval_expansion", "dangerous", r"\beval\s+[\"']?\$", "eval of expanded input is not allowed"),
    _rule("container_escape", "dangerous", _CMD + r"(?:docker|podman|kubectl|ctr)\b", "container runtime access is not allowed"),
)


@dataclass(frozen=True)
class FilterDecision:
    """Outcome of evaluating one line. Denial is a value, not an exception."""

    allowed: bool
    reason: str = ""
    rule: Optional[str] = None

    @classmethod
    def allow(cls) -> "FilterDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, rule: DenyRule) -> "FilterDecision":
        return cls(allowed=False, reason=rule.reason, rule=rule.name)

    @property
    def denied(self) -> bool:
        return not self.allowed


@dataclass(frozen=True)
class FilterPolicy:
    """Immutable set of deny rules, safe for unsynchronized concurrent reads."""

    rules: tuple[DenyRule, ...]

    @classmethod
    def default(cls) -> "FilterPolicy":
        return cls(
            rules=TRAVERSAL_RULES + ABSOLUTE_PATH_RULES + SYMLINK_RULES + DANGEROUS_RULES
        )

    def extended(self, extra: Iterable[DenyRule]) -> "FilterPolicy":
        return FilterPolicy(rules=self.rules + tuple(extra))

    def first_match(self, line: str) -> Optional[DenyRule]:
        for rule in self.rules:
            if rule.pattern.search(line):
                return rule
        return None


_LINE_TERMINATORS = "\r\n"
_LINE_CONTINUATION = re.compile(r"\\(?:\r\n|\r|\n)")
_IFS_EXPANSION = re.compile(r"\$\{IFS\}|\$IFS\b")


def _collapse(command: str) -> str:
    """The command as the shell tokenizes it, for the rules' purposes.

    Line continuations and empty quote pairs join tokens, and `$IFS`
    expands to a word separator.
    """
    collapsed = _LINE_CONTINUATION.sub("", command)
    collapsed = _IFS_EXPANSION.sub(" ", collapsed)
    return collapsed.replace("\\", "").replace("''", "").replace('""', "")


class CommandLineFilter:
    """Applies a FilterPolicy to assembled input lines.

    Usage:
        line_filter = CommandLineFilter()
        decision = line_filter.evaluate("cd ..\\n")
        if decision.denied:
            print(decision.reason)
    """

    def __init__(self, policy: Optional[FilterPolicy] = None):
        self._policy = policy or DEFAULT_POLICY

    @property
    def policy(self) -> FilterPolicy:
        return self._policy

    def evaluate(self, line: str) -> FilterDecision:
        """Evaluate one complete line (terminator optional)."""
        command = line.rstrip(_LINE_TERMINATORS)

        for candidate in (command, _collapse(command)):
            if not candidate.strip():
                continue
            rule = self._policy.first_match(candidate)
            if rule is not None:
                logger.info(
                    "command_denied",
                    rule=rule.name,
                    category=rule.category,
                )
                return FilterDecision.deny(rule)
        return FilterDecision.allow()


# Loaded once at import; never mutated at runtime.
DEFAULT_POLICY = FilterPolicy.default()
