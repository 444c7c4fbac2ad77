"""Console confirmation handlers for interactive permission prompts."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from codeloop.permissions.gate import ConfirmationRequest


def describe_tool_call(tool_name: str, args: dict[str, Any]) -> str:
    """Build a human-readable one-line description of a tool call."""
    if tool_name == "Bash" and "command" in args:
        return f"Run command: {args['command']}"
    if tool_name == "Write" and "file_path" in args:
        content = args.get("content", "")
        lines = content.count("\n") + 1 if content else 0
        return f"Write {args['file_path']} ({lines} lines)"
    if tool_name == "Edit" and "file_path" in args:
        return f"Edit {args['file_path']}"
    if tool_name == "Read" and "file_path" in args:
        return f"Read {args['file_path']}"
    if tool_name in ("Glob", "Grep") and "pattern" in args:
        return f"Search {'files' if tool_name == 'Glob' else 'content'}: {args['pattern']}"
    args_str = json.dumps(args, default=str)
    if len(args_str) > 80:
        args_str = args_str[:77] + "..."
    return f"{tool_name}({args_str})"


def _always_label(request: ConfirmationRequest) -> str:
    if request.command_prefix:
        return f"always allow `{request.command_prefix}` commands"
    if "command" in request.input:
        return "always allow this exact command"
    return f"always allow {request.tool.name}"


def apply_answer(request: ConfirmationRequest, answer: str) -> None:
    """Resolve *request* from a typed answer: y, a(lways), n or q(uit)."""
    match answer.strip().lower():
        case "y" | "yes":
            request.on_allow("temporary")
        case "a" | "always":
            request.on_allow("permanent")
        case "q" | "quit" | "abort":
            request.on_abort()
        case _:
            request.on_reject()


class StdinConfirmationHandler:
    """Plain-text confirmation prompt using stdin/stdout."""

    async def request_confirmation(self, request: ConfirmationRequest) -> None:
        loop = asyncio.get_running_loop()
        prompt = (
            f"\nAllow {request.tool.name}? "
            f"{describe_tool_call(request.tool.name, request.input)}\n"
            f"[y]es / [a] {_always_label(request)} / [n]o / [q]uit > "
        )
        try:
            answer = await loop.run_in_executor(None, lambda: input(prompt))
        except (EOFError, KeyboardInterrupt):
            request.on_abort()
            return
        apply_answer(request, answer)


class RichConfirmationHandler:
    """Rich-formatted interactive confirmation prompt."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console(stderr=True)

    async def request_confirmation(self, request: ConfirmationRequest) -> None:
        """Show a styled prompt and wait for an answer."""
        title = Text(f" ◆ {request.tool.name} ", style="bold #fbbf24")
        body = Text(describe_tool_call(request.tool.name, request.input), style="#94a3b8")

        self._console.print()
        self._console.print(Panel(
            body,
            title=title,
            border_style="#fbbf24",
            expand=False,
            padding=(0, 1),
        ))

        loop = asyncio.get_running_loop()
        prompt_text = (
            "[bold #fbbf24]Allow?[/bold #fbbf24] "
            f"[#7c7c8a](y = yes, a = {_always_label(request)}, n = no, q = abort)[/#7c7c8a] › "
        )
        try:
            self._console.print(prompt_text, end="")
            answer = await loop.run_in_executor(None, lambda: input(""))
        except (EOFError, KeyboardInterrupt):
            self._console.print()
            request.on_abort()
            return
        apply_answer(request, answer)
