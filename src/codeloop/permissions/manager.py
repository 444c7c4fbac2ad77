"""Standing-grant store and rule evaluation.

Evaluation order: Deny rules > tool says no permission needed > Allow rules >
Mode-based default.

Modes:
- DEFAULT: Ask for everything except read-only tools
- ACCEPT_EDITS: Auto-approve file edits, ask for Bash
- PLAN: Read-only — deny anything that is not read-only
- BYPASS: Auto-approve everything
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from codeloop.permissions.commands import command_segments, has_operators, split_command
from codeloop.permissions.rules import (
    PermissionConfig,
    PermissionDecision,
    PermissionRule,
    matches_rule,
)
from codeloop.types.config import PermissionMode
from codeloop.types.tools import Tool

logger = logging.getLogger(__name__)

# Tools auto-approved in ACCEPT_EDITS mode
EDIT_TOOLS = frozenset({"Write", "Edit"})


class PermissionManager:
    """Decides ALLOW / DENY / ASK for a tool call without user interaction.

    Permanent grants made from a confirmation prompt are added as allow rules
    and handed to ``on_grant`` so the caller can persist them.
    """

    def __init__(
        self,
        mode: PermissionMode = PermissionMode.DEFAULT,
        config: PermissionConfig | None = None,
        on_grant: Callable[[str], None] | None = None,
    ):
        self._mode = mode
        self._config = config or PermissionConfig()
        self._on_grant = on_grant

    @property
    def mode(self) -> PermissionMode:
        return self._mode

    @mode.setter
    def mode(self, mode: PermissionMode) -> None:
        self._mode = mode

    @property
    def config(self) -> PermissionConfig:
        return self._config

    def check(self, tool: Tool, args: dict[str, Any] | None = None) -> PermissionDecision:
        """Check permission for a tool call.

        Returns:
            PermissionDecision.ALLOW — execute without prompting
            PermissionDecision.DENY  — refuse execution
            PermissionDecision.ASK   — prompt user for approval
        """
        check_args = args or {}

        # 1. Explicit deny rules (highest priority)
        if self._matches_any(self._config.deny_rules, tool.name, check_args, every_part=False):
            return PermissionDecision.DENY

        # 2. The tool itself says this input is harmless
        if not tool.needs_permissions(check_args):
            return PermissionDecision.ALLOW

        # 3. Explicit allow rules
        if self._matches_any(self._config.allow_rules, tool.name, check_args, every_part=True):
            return PermissionDecision.ALLOW

        # 4. Mode-based defaults
        return self._mode_default(tool)

    def _matches_any(
        self,
        rules: list[PermissionRule],
        tool_name: str,
        args: dict[str, Any],
        *,
        every_part: bool,
    ) -> bool:
        command = args.get("command")
        if not isinstance(command, str):
            return any(matches_rule(rule, tool_name, args) for rule in rules)
        # Only an exact rule may name a command with operators as a whole.
        if any(not rule.is_prefix and matches_rule(rule, tool_name, args) for rule in rules):
            return True
        if every_part:
            # A compound command is allowed only if every part is. Prefix grants
            # never cover a part with substitutions, redirects or backgrounding.
            parts = split_command(command)
            return bool(parts) and all(
                any(
                    (not rule.is_prefix or not has_operators(part))
                    and matches_rule(rule, tool_name, {"command": part})
                    for rule in rules
                )
                for part in parts
            )
        # Denied if any part, including the body of a substitution, is.
        return any(
            any(matches_rule(rule, tool_name, {"command": part}) for rule in rules)
            for part in command_segments(command)
        )

    def _mode_default(self, tool: Tool) -> PermissionDecision:
        """Apply mode-based default permission."""
        match self._mode:
            case PermissionMode.BYPASS:
                return PermissionDecision.ALLOW

            case PermissionMode.PLAN:
                if tool.is_read_only():
                    return PermissionDecision.ALLOW
                return PermissionDecision.DENY

            case PermissionMode.ACCEPT_EDITS:
                if tool.is_read_only() or tool.name in EDIT_TOOLS:
                    return PermissionDecision.ALLOW
                return PermissionDecision.ASK

            case PermissionMode.DEFAULT:
                if tool.is_read_only():
                    return PermissionDecision.ALLOW
                return PermissionDecision.ASK

            case _:
                return PermissionDecision.ASK

    # ------------------------------------------------------------------
    # Standing grants
    # ------------------------------------------------------------------

    def grant(
        self, tool: Tool, args: dict[str, Any], command_prefix: str | None = None,
    ) -> str:
        """Record a permanent allow rule for calls like this one.

        Bash gets a prefix rule when a prefix is known, else an exact-command
        rule. Every other tool is allowed outright.
        """
        if "command" in args and isinstance(args["command"], str):
            if command_prefix:
                rule = f"{tool.name}({command_prefix}:*)"
            else:
                rule = f"{tool.name}({args['command'].strip()})"
        else:
            rule = tool.name
        self._config.add_allow(rule)
        logger.debug("Granted standing permission %s", rule)
        if self._on_grant is not None:
            self._on_grant(rule)
        return rule
