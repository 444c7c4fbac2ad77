"""The core query loop — orchestrates model calls and tool execution."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import AsyncIterator, Mapping, Sequence

from codeloop.core.context import ContextCompactor
from codeloop.core.execution import ToolExecutionController
from codeloop.core.reminders import ReminderService
from codeloop.permissions.gate import CanUseTool
from codeloop.types.config import QueryConfig
from codeloop.types.messages import (
    INTERRUPT_MESSAGE,
    INTERRUPT_MESSAGE_FOR_TOOL_USE,
    AssistantMessage,
    Message,
    TextBlock,
    ToolResultBlock,
    UserMessage,
    create_assistant_api_error_message,
    create_assistant_message,
    normalize_messages_for_api,
)
from codeloop.types.providers import ModelClient
from codeloop.types.tools import ExecutionContext

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are an expert software engineering assistant working in the user's project.

You have tools to read, write, and edit files, run shell commands, and search the \
codebase. Use them proactively to accomplish the user's request.

IMPORTANT: Be action-oriented. When the user asks you to build, fix, or change something, \
start doing it immediately using your tools. Do NOT ask clarifying questions unless the \
request is genuinely ambiguous and you cannot make a reasonable default choice.

Read a file before editing it. Independent read-only lookups may be requested together \
in one response; they run in parallel.

Be concise in your text responses. Let your tool calls and code do the talking.

Working directory: {cwd}
"""

CONTEXT_PREAMBLE = "As you answer the user's questions, you can use the following context:"


def format_system_prompt(system_prompt: Sequence[str], context: Mapping[str, str]) -> list[str]:
    """Append *context* entries to the caller's prompt fragments."""
    if not context:
        return list(system_prompt)
    entries = "\n".join(
        f'<context name="{key}">{value}</context>' for key, value in context.items()
    )
    return [*system_prompt, f"\n{CONTEXT_PREAMBLE}\n{entries}"]


def inject_reminders(messages: list[Message], reminders: Sequence[str]) -> list[Message]:
    """Put reminder text into the most recent user message.

    String content is prefixed. Block content gets a leading TextBlock, or a
    trailing one when it carries tool results, which must come first.
    """
    if not reminders:
        return messages
    text = "\n\n".join(reminders)
    for idx in range(len(messages) - 1, -1, -1):
        msg = messages[idx]
        if not isinstance(msg, UserMessage):
            continue
        if isinstance(msg.content, str):
            content: str | tuple = f"{text}\n\n{msg.content}"
        elif any(isinstance(b, ToolResultBlock) for b in msg.content):
            content = (*msg.content, TextBlock(text))
        else:
            content = (TextBlock(text), *msg.content)
        updated = list(messages)
        updated[idx] = dataclasses.replace(msg, content=content)
        return updated
    return messages


class QueryLoop:
    """Drives one query to a terminal state.

    Per turn: compact if over budget, call the model, run the requested tools,
    feed the results back. Stops when the model requests no tools, when the
    query is cancelled, or after ``max_turns``.
    """

    def __init__(
        self,
        model_client: ModelClient,
        controller: ToolExecutionController | None = None,
        reminders: ReminderService | None = None,
        compactor: ContextCompactor | None = None,
        config: QueryConfig | None = None,
    ) -> None:
        self._client = model_client
        self._config = config or QueryConfig()
        self._controller = controller or ToolExecutionController(self._config.max_tool_concurrency)
        self._reminders = reminders
        self._compactor = compactor

    async def query(
        self,
        messages: Sequence[Message],
        system_prompt: Sequence[str],
        context: Mapping[str, str],
        can_use_tool: CanUseTool,
        ctx: ExecutionContext,
    ) -> AsyncIterator[Message]:
        """Run the loop, yielding every assistant, progress and result message."""
        transcript = list(messages)
        turn = 0
        while True:
            if self._config.max_turns is not None and turn >= self._config.max_turns:
                logger.warning("Stopping query after %d turns", turn)
                return
            turn += 1

            full_prompt = format_system_prompt(system_prompt, context)
            if self._compactor is not None and self._compactor.should_compact(transcript, full_prompt):
                transcript, _ = await self._compactor.compact(
                    transcript, ctx.cancel_token, model=ctx.options.model,
                )

            if self._reminders is not None:
                reminders = self._reminders.generate(has_context=bool(context))
                transcript = inject_reminders(transcript, [r.content for r in reminders])

            assistant = await self._call_model(transcript, full_prompt, ctx)
            if ctx.cancel_token.cancelled:
                yield create_assistant_message(INTERRUPT_MESSAGE)
                return
            yield assistant

            tool_uses = assistant.tool_uses
            if assistant.is_api_error or not tool_uses:
                return

            results: list[UserMessage] = []
            async for message in self._run_tools(assistant, can_use_tool, ctx):
                yield message
                if isinstance(message, UserMessage):
                    results.append(message)

            order = {block.id: i for i, block in enumerate(tool_uses)}
            results.sort(key=lambda m: order.get(m.tool_result.tool_use_id, len(order)))

            if ctx.cancel_token.cancelled:
                yield create_assistant_message(INTERRUPT_MESSAGE_FOR_TOOL_USE)
                return

            transcript = [*transcript, assistant, *results]

    async def _call_model(
        self,
        transcript: list[Message],
        system_prompt: list[str],
        ctx: ExecutionContext,
    ) -> AssistantMessage:
        try:
            return await self._client.complete(
                normalize_messages_for_api(transcript),
                system_prompt,
                ctx.options.max_thinking_tokens,
                ctx.tools,
                ctx.cancel_token,
                safe_mode=ctx.options.safe_mode,
                model=ctx.options.model,
            )
        except Exception as exc:  # noqa: BLE001
            logger.debug("Model call failed", exc_info=True)
            return create_assistant_api_error_message(f"API Error: {exc}")

    def _run_tools(
        self,
        assistant: AssistantMessage,
        can_use_tool: CanUseTool,
        ctx: ExecutionContext,
    ) -> AsyncIterator[Message]:
        requests = assistant.tool_uses
        plan = self._controller.analyze_execution_plan(requests, ctx.tools)
        for recommendation in plan.recommendations:
            logger.debug("Execution plan: %s", recommendation)
        concurrent = plan.can_run_concurrently and self._controller.all_read_only(requests, ctx.tools)
        logger.debug(
            "Running %d tool(s) %s", len(requests), "concurrently" if concurrent else "serially",
        )
        if concurrent:
            return self._controller.run_concurrently(requests, assistant, can_use_tool, ctx)
        return self._controller.run_sequentially(requests, assistant, can_use_tool, ctx)
