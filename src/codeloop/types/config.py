"""Configuration types for codeloop."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PermissionMode(Enum):
    """Permission modes controlling what the agent can do without asking."""

    DEFAULT = "default"  # Ask for anything that is not read-only
    ACCEPT_EDITS = "accept_edits"  # Auto-approve file edits, still ask for Bash
    PLAN = "plan"  # Read-only mode
    BYPASS = "bypass"  # Auto-approve everything


DEFAULT_TIMEOUT_MS = 30 * 60 * 1000
MAX_TIMEOUT_MS = 600_000


@dataclass(frozen=True, slots=True)
class ShellConfig:
    """Configuration for the persistent shell session."""

    timeout_ms: int = DEFAULT_TIMEOUT_MS
    blocked_commands: tuple[str, ...] = ()
    shell_path: str | None = None  # Explicit override; otherwise detected


@dataclass(frozen=True, slots=True)
class QueryConfig:
    """Knobs for the query loop."""

    max_tool_concurrency: int = 10
    max_thinking_tokens: int = 0
    compaction_threshold: float = 0.92
    context_window: int = 200_000
    max_turns: int | None = None


@dataclass(slots=True)
class RunConfig:
    """Configuration for a single codeloop.run() invocation."""

    model: str | None = None
    tools: list[str] = field(
        default_factory=lambda: ["Read", "Write", "Edit", "Bash", "Glob", "Grep"],
    )
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    allow_rules: list[str] = field(default_factory=list)
    deny_rules: list[str] = field(default_factory=list)
    session_id: str | None = None
    cwd: str | None = None
    system_prompt: str | None = None
    api_key: str | None = None
    safe_mode: bool = False
    query: QueryConfig = field(default_factory=QueryConfig)
    shell: ShellConfig = field(default_factory=ShellConfig)
    extra: dict[str, Any] = field(default_factory=dict)
