"""Engine: wires model client + tools + shell + permissions into a running query."""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Mapping
from contextlib import aclosing
from pathlib import Path

from codeloop.core.cancellation import CancellationToken
from codeloop.core.config import (
    load_project_docs,
    load_run_config,
    parse_permission_mode,
    resolve_api_key,
    save_allowed_rule,
)
from codeloop.core.context import ContextCompactor
from codeloop.core.execution import ToolExecutionController
from codeloop.core.freshness import FileFreshnessTracker
from codeloop.core.loop import SYSTEM_PROMPT, QueryLoop
from codeloop.core.reminders import ReminderService
from codeloop.core.session import Session
from codeloop.permissions.gate import ConfirmationHandler, PermissionGate
from codeloop.permissions.manager import PermissionManager
from codeloop.permissions.rules import PermissionConfig
from codeloop.providers.registry import ALIASES, DEFAULT_MODEL, MODELS
from codeloop.shell.detect import DetectedShell
from codeloop.shell.session import ShellSession
from codeloop.tools.manager import ToolManager
from codeloop.types.config import PermissionMode, RunConfig
from codeloop.types.messages import Message, create_user_message
from codeloop.types.providers import ModelClient
from codeloop.types.tools import ExecutionContext, QueryOptions

logger = logging.getLogger(__name__)

_MENTION = re.compile(r"(?<!\S)@([^\s@]+)")


async def run(
    prompt: str,
    *,
    model: str | None = None,
    tools: list[str] | None = None,
    permission_mode: str | PermissionMode | None = None,
    allow_rules: list[str] | None = None,
    deny_rules: list[str] | None = None,
    session_id: str | None = None,
    cwd: str | None = None,
    api_key: str | None = None,
    system_prompt: str | None = None,
    safe_mode: bool | None = None,
    context: Mapping[str, str] | None = None,
    confirmation_handler: ConfirmationHandler | None = None,
    cancel_token: CancellationToken | None = None,
    persist_grants: bool = True,
    _model_client: ModelClient | None = None,
) -> AsyncIterator[Message]:
    """Run one query to completion, yielding every message it produces.

    This is the primary library entry point.

    Args:
        prompt: The user's instruction.
        model: Model ID or alias. If None, uses config or the default model.
        tools: Names of the built-in tools to enable. Defaults to all six.
        permission_mode: "default", "accept_edits", "plan" or "bypass".
        allow_rules: Extra allow rules, e.g. ``["Bash(git diff:*)"]``.
        deny_rules: Extra deny rules.
        session_id: Resume an existing transcript, or None for new.
        cwd: Working directory for tools and the shell.
        api_key: Anthropic API key (or set via env var).
        system_prompt: Override default system prompt.
        safe_mode: Never record standing grants from confirmation prompts.
        context: Extra named context entries for the system prompt.
        confirmation_handler: Asked when a tool call needs approval. Without
            one, such calls are denied.
        cancel_token: Cancel the query from outside.
        persist_grants: Save "always allow" answers to the project config.
        _model_client: Injected model client for testing (private).
    """
    # Resolve working directory
    resolved_cwd = str(Path(cwd).resolve()) if cwd else str(Path.cwd())

    if isinstance(permission_mode, str):
        permission_mode = parse_permission_mode(permission_mode)
    config = load_run_config(
        resolved_cwd,
        model=model,
        tools=tools,
        permission_mode=permission_mode,
        session_id=session_id,
        system_prompt=system_prompt,
        api_key=api_key,
        safe_mode=safe_mode,
    )
    config.allow_rules.extend(allow_rules or [])
    config.deny_rules.extend(deny_rules or [])

    client = _model_client or _create_model_client(config)
    model_id = getattr(client, "model_id", None) or config.model or DEFAULT_MODEL

    # Create or resume session
    session = Session(session_id=config.session_id, cwd=resolved_cwd)
    session.save_metadata(model=model_id)

    reminders = ReminderService()
    freshness = FileFreshnessTracker(emit=reminders.emit)

    tool_manager = ToolManager()
    tool_manager.register_defaults(config.shell.blocked_commands)
    tool_list = tool_manager.filter(config.tools).tools

    perm_manager = PermissionManager(
        mode=config.permission_mode,
        config=PermissionConfig.from_strings(config.allow_rules, config.deny_rules),
        on_grant=(lambda rule: _persist_grant(rule, resolved_cwd)) if persist_grants else None,
    )
    gate = PermissionGate(perm_manager, confirmation_handler)

    # Build system prompt and context
    prompt_parts = [config.system_prompt or SYSTEM_PROMPT.format(cwd=resolved_cwd)]
    query_context = dict(context or {})
    if project_docs := load_project_docs(resolved_cwd):
        query_context["projectDocs"] = project_docs

    info = MODELS.get(ALIASES.get(model_id, model_id))
    context_window = info.context_window if info else config.query.context_window
    compactor = ContextCompactor(
        client,
        context_window=context_window,
        threshold=config.query.compaction_threshold,
        freshness=freshness,
    )
    loop = QueryLoop(
        client,
        ToolExecutionController(config.query.max_tool_concurrency),
        reminders,
        compactor,
        config.query,
    )

    shell = None
    if any(t.name == "Bash" for t in tool_list):
        detected = DetectedShell(config.shell.shell_path) if config.shell.shell_path else None
        shell = ShellSession(resolved_cwd, shell=detected, timeout_ms=config.shell.timeout_ms)

    ctx = ExecutionContext(
        cancel_token=cancel_token or CancellationToken(),
        tools=tool_list,
        cwd=Path(resolved_cwd),
        session_id=session.session_id,
        options=QueryOptions(
            model=config.model,
            max_thinking_tokens=config.query.max_thinking_tokens,
            safe_mode=config.safe_mode,
            max_tool_concurrency=config.query.max_tool_concurrency,
        ),
        shell=shell,
        freshness=freshness,
    )

    user_message = create_user_message(prompt)
    session.add_message(user_message)
    messages: list[Message] = [*session.messages]
    reminders.emit("session:startup", {"session_id": session.session_id})
    for mention, path in mentioned_files(prompt, resolved_cwd):
        reminders.emit("file:mentioned", {"file_path": path, "mention": mention})
    logger.debug("Starting query in %s with tools %s", resolved_cwd, [t.name for t in tool_list])

    try:
        async with aclosing(loop.query(messages, prompt_parts, query_context, gate, ctx)) as stream:
            async for msg in stream:
                session.add_message(msg)
                yield msg
    finally:
        if shell is not None:
            await shell.close()


def mentioned_files(prompt: str, cwd: str) -> list[tuple[str, str]]:
    """``@path`` tokens in *prompt* that name existing files, with their resolved paths."""
    found: list[tuple[str, str]] = []
    for match in _MENTION.finditer(prompt):
        mention = match.group(1).rstrip(".,;:!?)")
        path = (Path(cwd) / Path(mention).expanduser()).resolve()
        try:
            is_file = path.is_file()
        except OSError:
            continue
        if is_file and (mention, str(path)) not in found:
            found.append((mention, str(path)))
    return found


def _create_model_client(config: RunConfig) -> ModelClient:
    """Create the Anthropic model client from config."""
    from codeloop.providers.anthropic import AnthropicModelClient

    return AnthropicModelClient(
        api_key=resolve_api_key(config.api_key),
        model=config.model or DEFAULT_MODEL,
    )


def _persist_grant(rule: str, cwd: str) -> None:
    try:
        path = save_allowed_rule(rule, cwd)
    except OSError as exc:
        logger.warning("Could not save permission rule %s: %s", rule, exc)
        return
    logger.info("Saved permission rule %s to %s", rule, path)

