"""Bash tool — runs commands in the persistent shell session."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any

from codeloop.permissions.commands import command_segments
from codeloop.tools.base import BaseTool
from codeloop.types.config import MAX_TIMEOUT_MS
from codeloop.types.tools import (
    ExecutionContext,
    ToolDef,
    ToolOutput,
    ToolParam,
    ValidationResult,
)

_MAX_OUTPUT_CHARS = 30_000

BANNED_COMMANDS = frozenset({
    "alias", "curl", "curlie", "wget", "axel", "aria2c", "nc", "telnet",
    "lynx", "w3m", "links", "httpie", "xh", "http-prompt", "chrome", "firefox", "safari",
})

# Commands that only inspect state and never need a permission prompt.
SAFE_COMMANDS = frozenset({
    "git status", "git diff", "git log", "git branch", "pwd", "tree", "date", "which",
})

_DEFINITION = ToolDef(
    name="Bash",
    description=(
        "Execute a command in a persistent shell session. The working directory "
        "and environment carry over between calls. Output is truncated to "
        f"{_MAX_OUTPUT_CHARS} characters. An optional timeout is in milliseconds "
        f"(max {MAX_TIMEOUT_MS}); without one the session timeout applies."
    ),
    parameters=(
        ToolParam(
            name="command",
            type="string",
            description="The shell command to execute.",
        ),
        ToolParam(
            name="timeout",
            type="integer",
            description=f"Timeout in milliseconds, max {MAX_TIMEOUT_MS}.",
            required=False,
        ),
    ),
)


def _truncate(text: str) -> str:
    if len(text) <= _MAX_OUTPUT_CHARS:
        return text
    half = _MAX_OUTPUT_CHARS // 2
    omitted = text[half:-half].count("\n") + 1
    return f"{text[:half]}\n\n... [{omitted} lines truncated] ...\n\n{text[-half:]}"


class BashTool(BaseTool):
    """Runs shell commands through the session's ShellSession."""

    def __init__(self, blocked_commands: tuple[str, ...] = ()) -> None:
        self._blocked = BANNED_COMMANDS | frozenset(blocked_commands)

    @property
    def definition(self) -> ToolDef:
        return _DEFINITION

    def describe(self, input: dict[str, Any]) -> str:
        return input.get("command", "")

    def needs_permissions(self, input: dict[str, Any]) -> bool:
        command = str(input.get("command", "")).strip()
        return command not in SAFE_COMMANDS

    async def validate_input(
        self, input: dict[str, Any], ctx: ExecutionContext,
    ) -> ValidationResult:
        timeout = input.get("timeout")
        if timeout is not None and not 0 < timeout <= MAX_TIMEOUT_MS:
            return ValidationResult.failure(
                f"timeout must be between 1 and {MAX_TIMEOUT_MS} milliseconds",
            )

        original_cwd = Path(ctx.cwd).resolve()
        current_cwd = Path(ctx.shell.pwd()) if ctx.shell is not None else original_cwd
        for part in command_segments(input["command"]):
            try:
                words = shlex.split(part)
            except ValueError:
                words = part.split()
            if not words:
                continue
            base = words[0]
            if base in self._blocked:
                return ValidationResult.failure(f"Command '{base}' is not allowed for security reasons")
            if base == "cd" and len(words) > 1:
                target = (current_cwd / Path(words[1]).expanduser()).resolve()
                if target != original_cwd and original_cwd not in target.parents:
                    return ValidationResult.failure(
                        f"ERROR: cd to '{target}' was blocked. For security, you may only "
                        f"change directories to children of the original working directory "
                        f"({original_cwd}) for this session.",
                    )
        return ValidationResult.success()

    async def execute(self, args: dict[str, Any], ctx: ExecutionContext) -> ToolOutput:
        if ctx.shell is None:
            return self._error("No shell session is available.")
        command: str = args["command"]
        timeout_ms = args.get("timeout")
        timeout = min(int(timeout_ms), MAX_TIMEOUT_MS) / 1000 if timeout_ms else None

        result = await ctx.shell.exec(command, ctx.cancel_token, timeout)

        stdout = _truncate(result.stdout.strip())
        stderr = _truncate(result.stderr.strip())
        if result.interrupted:
            stderr = (stderr + "\n" if stderr else "") + "<error>Command was aborted before completion</error>"

        text = stdout
        if stderr:
            text = f"{text}\n{stderr}" if text else stderr
        if result.code != 0:
            text = text.rstrip("\n") + f"\n[Exit code: {result.code}]"
        if not text.strip():
            text = "Command completed with no output"

        data = {
            "stdout": result.stdout,
            "stderr": result.stderr,
            "code": result.code,
            "interrupted": result.interrupted,
        }
        if result.code != 0 or result.interrupted:
            return self._error(text.lstrip("\n"), data=data)
        return self._ok(text, data=data)
