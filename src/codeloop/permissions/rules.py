"""Permission rules and configuration.

Rules are written as strings, the same way they appear in config files:

- ``Read`` matches every Read call (tool names may be globs: ``mcp__*``).
- ``Bash(git diff:*)`` matches any command starting with ``git diff``.
- ``Bash(npm test)`` matches exactly that command.
- ``Edit(src/*)`` matches an Edit whose file path matches the glob.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from codeloop.errors import ConfigError


class PermissionDecision(Enum):
    """Result of a permission check."""

    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


@dataclass(frozen=True, slots=True)
class PermissionRule:
    """A single permission rule.

    Rules are evaluated in priority order: explicit deny > explicit allow > ask.
    """

    tool: str  # Tool name or glob pattern (e.g. "Bash", "mcp__*", "*")
    decision: PermissionDecision
    content: str | None = None  # "git diff:*", "npm test", "src/*"

    @property
    def is_prefix(self) -> bool:
        return self.content is not None and self.content.endswith(":*")

    def __str__(self) -> str:
        return self.tool if self.content is None else f"{self.tool}({self.content})"


_RULE_RE = re.compile(r"^\s*([^()\s]+)\s*(?:\((.*)\))?\s*$")


def parse_rule(text: str, decision: PermissionDecision) -> PermissionRule:
    """Parse ``Tool`` or ``Tool(content)`` into a rule."""
    match = _RULE_RE.match(text)
    if not match:
        raise ConfigError(f"Invalid permission rule: {text!r}")
    tool, content = match.group(1), match.group(2)
    if content is not None:
        content = content.strip()
        if not content or content == "*":
            content = None
    return PermissionRule(tool=tool, decision=decision, content=content)


@dataclass(slots=True)
class PermissionConfig:
    """Explicit allow/deny rules layered over the permission mode."""

    deny_rules: list[PermissionRule] = field(default_factory=list)
    allow_rules: list[PermissionRule] = field(default_factory=list)

    @classmethod
    def from_strings(
        cls, allow: list[str] | tuple[str, ...] = (), deny: list[str] | tuple[str, ...] = (),
    ) -> PermissionConfig:
        config = cls()
        for text in allow:
            config.add_allow(text)
        for text in deny:
            config.add_deny(text)
        return config

    def add_deny(self, rule: str) -> PermissionRule:
        parsed = parse_rule(rule, PermissionDecision.DENY)
        if parsed not in self.deny_rules:
            self.deny_rules.append(parsed)
        return parsed

    def add_allow(self, rule: str) -> PermissionRule:
        parsed = parse_rule(rule, PermissionDecision.ALLOW)
        if parsed not in self.allow_rules:
            self.allow_rules.append(parsed)
        return parsed


def rule_subject(tool_name: str, args: dict[str, Any]) -> str | None:
    """The argument a rule's content is matched against."""
    for key in ("command", "file_path", "path", "pattern", "url"):
        if key in args and isinstance(args[key], str):
            return args[key].strip() if key == "command" else args[key]
    return None


def matches_rule(rule: PermissionRule, tool_name: str, args: dict[str, Any]) -> bool:
    """Check if a rule matches a tool call."""
    if not fnmatch.fnmatch(tool_name, rule.tool):
        return False
    if rule.content is None:
        return True
    subject = rule_subject(tool_name, args)
    if subject is None:
        return False
    if rule.is_prefix:
        prefix = rule.content[:-2]
        return subject == prefix or subject.startswith(prefix + " ")
    if "command" in args:
        return subject == rule.content
    return fnmatch.fnmatch(subject, rule.content)
