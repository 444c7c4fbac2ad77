"""Tool execution controller.

Classifies a batch of tool-use requests and drives them to completion:

- If every requested tool is concurrency-safe, the whole batch runs
  concurrently under a hard cap (``MAX_TOOL_USE_CONCURRENCY``).
- Otherwise the whole batch runs serially in request order. One unsafe tool
  serializes everything; the finer grouping from ``group_tools_for_execution``
  only feeds the recommendations of ``analyze_execution_plan``, which the
  query loop logs at debug level.

Each invocation goes through schema validation, input normalization,
tool-specific validation and the permission gate before the tool runs.
Failures at any step become an error tool result for that invocation only.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

import anyio
from anyio.abc import ObjectSendStream

from codeloop.permissions.gate import CanUseTool
from codeloop.types.messages import (
    AssistantMessage,
    Message,
    ProgressMessage,
    ToolUseBlock,
    create_progress_message,
    create_tool_result_message,
    create_tool_result_stop_message,
)
from codeloop.types.tools import ExecutionContext, Tool, ToolOutput, ToolProgress

logger = logging.getLogger(__name__)

MAX_TOOL_USE_CONCURRENCY = 10
MAX_ERROR_CHARS = 10_000


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def format_error(exc: BaseException) -> str:
    """Render an exception for the model, capped at MAX_ERROR_CHARS.

    Exceptions carrying ``stderr``/``stdout`` attributes (subprocess errors)
    have those appended.
    """
    parts = [str(exc) or type(exc).__name__]
    for attr in ("stderr", "stdout"):
        value = getattr(exc, attr, None)
        if isinstance(value, bytes):
            value = value.decode(errors="replace")
        if value:
            parts.append(str(value))
    text = "\n".join(parts).strip()
    if len(text) <= MAX_ERROR_CHARS:
        return text
    half = MAX_ERROR_CHARS // 2
    omitted = len(text) - MAX_ERROR_CHARS
    return f"{text[:half]}\n\n... [{omitted} characters truncated] ...\n\n{text[-half:]}"


def normalize_tool_input(tool: Tool, input: dict[str, Any], ctx: ExecutionContext) -> dict[str, Any]:
    """Tool-specific cleanup applied before validation.

    Bash commands lose a redundant leading ``cd <cwd> &&``.
    """
    if tool.name == "Bash" and isinstance(input.get("command"), str):
        cwd = re.escape(str(ctx.cwd))
        command = re.sub(rf"^\s*cd\s+(['\"]?){cwd}\1\s*&&\s*", "", input["command"])
        if command != input["command"]:
            return {**input, "command": command}
    return input


def _find(tools: Sequence[Tool], name: str) -> Tool | None:
    for tool in tools:
        if tool.name == name:
            return tool
    return None


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class ToolExecutionGroup:
    concurrent: bool
    requests: tuple[ToolUseBlock, ...]


@dataclass(frozen=True, slots=True)
class ExecutionPlan:
    groups: tuple[ToolExecutionGroup, ...]
    can_run_concurrently: bool
    unknown_tools: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()


class ToolExecutionController:
    """Runs the tool-use requests of one assistant message."""

    def __init__(self, max_concurrency: int = MAX_TOOL_USE_CONCURRENCY) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._max_concurrency = max_concurrency

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def can_run_concurrently(self, requests: Sequence[ToolUseBlock], tools: Sequence[Tool]) -> bool:
        """True when every requested tool is known and concurrency-safe."""
        for request in requests:
            tool = _find(tools, request.name)
            if tool is None or not tool.is_concurrency_safe():
                return False
        return True

    def all_read_only(self, requests: Sequence[ToolUseBlock], tools: Sequence[Tool]) -> bool:
        for request in requests:
            tool = _find(tools, request.name)
            if tool is None or not tool.is_read_only():
                return False
        return True

    def group_tools_for_execution(
        self, requests: Sequence[ToolUseBlock], tools: Sequence[Tool],
    ) -> list[ToolExecutionGroup]:
        """Split *requests* into runs of safe tools and single unsafe ones."""
        groups: list[ToolExecutionGroup] = []
        pending: list[ToolUseBlock] = []
        for request in requests:
            tool = _find(tools, request.name)
            if tool is not None and tool.is_concurrency_safe():
                pending.append(request)
                continue
            if pending:
                groups.append(ToolExecutionGroup(True, tuple(pending)))
                pending = []
            groups.append(ToolExecutionGroup(False, (request,)))
        if pending:
            groups.append(ToolExecutionGroup(True, tuple(pending)))
        return groups

    def analyze_execution_plan(
        self, requests: Sequence[ToolUseBlock], tools: Sequence[Tool],
    ) -> ExecutionPlan:
        groups = self.group_tools_for_execution(requests, tools)
        unknown = tuple(r.name for r in requests if _find(tools, r.name) is None)
        concurrent = self.can_run_concurrently(requests, tools)
        recommendations: list[str] = []
        if unknown:
            recommendations.append(f"Unknown tools will fail: {', '.join(unknown)}")
        if not concurrent and any(g.concurrent and len(g.requests) > 1 for g in groups):
            recommendations.append(
                "Batch runs serially because it mixes safe and unsafe tools; "
                "issuing the read-only calls separately would let them run in parallel",
            )
        if concurrent and len(requests) > self._max_concurrency:
            recommendations.append(
                f"{len(requests)} calls exceed the concurrency cap of {self._max_concurrency}",
            )
        return ExecutionPlan(
            groups=tuple(groups),
            can_run_concurrently=concurrent,
            unknown_tools=unknown,
            recommendations=tuple(recommendations),
        )

    # ------------------------------------------------------------------
    # Batch execution
    # ------------------------------------------------------------------

    async def run_sequentially(
        self,
        requests: Sequence[ToolUseBlock],
        assistant_message: AssistantMessage,
        can_use_tool: CanUseTool,
        ctx: ExecutionContext,
    ) -> AsyncIterator[Message]:
        sibling_ids = frozenset(r.id for r in requests)
        for request in requests:
            async for message in self.run_tool_use(
                request, sibling_ids, assistant_message, can_use_tool, ctx,
            ):
                yield message

    async def run_concurrently(
        self,
        requests: Sequence[ToolUseBlock],
        assistant_message: AssistantMessage,
        can_use_tool: CanUseTool,
        ctx: ExecutionContext,
    ) -> AsyncIterator[Message]:
        """Run every request at once, merging output as it arrives.

        Messages of one invocation stay in order; messages of different
        invocations interleave freely.
        """
        sibling_ids = frozenset(r.id for r in requests)
        limiter = anyio.CapacityLimiter(self._max_concurrency)
        send, receive = anyio.create_memory_object_stream[Message](max_buffer_size=math.inf)

        async def worker(request: ToolUseBlock, stream: ObjectSendStream[Message]) -> None:
            async with stream:
                async with limiter:
                    async for message in self.run_tool_use(
                        request, sibling_ids, assistant_message, can_use_tool, ctx,
                    ):
                        await stream.send(message)

        tasks: list[asyncio.Task[None]] = []
        async with send:
            for request in requests:
                tasks.append(asyncio.create_task(worker(request, send.clone())))
        try:
            async with receive:
                async for message in receive:
                    yield message
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            for result in await asyncio.gather(*tasks, return_exceptions=True):
                if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                    logger.error("Concurrent tool worker failed", exc_info=result)

    # ------------------------------------------------------------------
    # Single invocation
    # ------------------------------------------------------------------

    async def run_tool_use(
        self,
        request: ToolUseBlock,
        sibling_ids: frozenset[str],
        assistant_message: AssistantMessage,
        can_use_tool: CanUseTool,
        ctx: ExecutionContext,
    ) -> AsyncIterator[Message]:
        """Drive one invocation. Always ends with exactly one tool result."""
        tool = ctx.find_tool(request.name)
        if tool is None:
            logger.warning("Model requested unknown tool %s", request.name)
            yield create_tool_result_message(
                request.id, f"Error: No such tool available: {request.name}", is_error=True,
            )
            return

        if ctx.cancel_token.cancelled:
            yield create_tool_result_stop_message(request.id)
            return

        logger.debug("Starting tool %s (%s)", tool.name, request.id)
        try:
            saw_progress = False
            async with aclosing(self.check_permissions_and_call_tool(
                tool, request, sibling_ids, assistant_message, can_use_tool, ctx,
            )) as messages:
                async for message in messages:
                    if ctx.cancel_token.cancelled:
                        if saw_progress and isinstance(message, ProgressMessage):
                            yield message
                        yield create_tool_result_stop_message(request.id)
                        return
                    if isinstance(message, ProgressMessage):
                        saw_progress = True
                    yield message
        except Exception as exc:  # noqa: BLE001
            logger.debug("Tool %s raised", tool.name, exc_info=True)
            yield create_tool_result_message(
                request.id, f"Tool execution failed: {format_error(exc)}", is_error=True,
            )
        else:
            logger.debug("Finished tool %s (%s)", tool.name, request.id)

    async def check_permissions_and_call_tool(
        self,
        tool: Tool,
        request: ToolUseBlock,
        sibling_ids: frozenset[str],
        assistant_message: AssistantMessage,
        can_use_tool: CanUseTool,
        ctx: ExecutionContext,
    ) -> AsyncIterator[Message]:
        schema = tool.validate_schema(request.input)
        if not schema.ok:
            yield create_tool_result_message(
                request.id, f"InputValidationError: {schema.message}", is_error=True,
            )
            return

        input = normalize_tool_input(tool, request.input, ctx)

        validation = await tool.validate_input(input, ctx)
        if not validation.ok:
            yield create_tool_result_message(request.id, validation.message, is_error=True)
            return

        permission = await can_use_tool(tool, input, ctx, assistant_message)
        if not permission.allowed:
            yield create_tool_result_message(request.id, permission.message, is_error=True)
            return

        async with aclosing(tool.call(input, ctx)) as events:
            async for event in events:
                match event:
                    case ToolProgress(content=content):
                        yield create_progress_message(request.id, sibling_ids, content)
                    case ToolOutput():
                        yield create_tool_result_message(
                            request.id,
                            event.result_for_assistant,
                            is_error=event.is_error,
                            data=event.data,
                        )
                        return
        raise RuntimeError(f"Tool {tool.name} finished without producing a result")
