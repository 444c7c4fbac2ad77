"""Context management — token estimation and compaction."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from codeloop.types.messages import (
    AssistantMessage,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    create_user_message,
    normalize_messages_for_api,
)

if TYPE_CHECKING:
    from codeloop.core.cancellation import CancellationToken
    from codeloop.core.freshness import FileFreshnessTracker
    from codeloop.types.providers import ModelClient

logger = logging.getLogger(__name__)

# Compaction triggers at this fraction of the context window
COMPACTION_THRESHOLD = 0.92

# Fewer messages than this are never compacted
MIN_MESSAGES_TO_COMPACT = 3

# The kept tail may use at most this fraction of the context window
MAX_TAIL_FRACTION = 0.25

COMPACTION_NOTICE = (
    "Context automatically compressed due to token limit. Essential information preserved."
)
CONTINUE_PROMPT = "Continue from where you left off, using the summary above."

SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful AI assistant tasked with creating comprehensive conversation "
    "summaries that preserve all essential context for continuing development work."
)

COMPRESSION_PROMPT = """Please provide a comprehensive summary of our conversation structured as follows:

## Technical Context
Development environment, tools, frameworks, and configurations in use. Programming languages, libraries, and technical constraints. File structure, directory organization, and project architecture.

## Project Overview
Main project goals, features, and scope. Key components, modules, and their relationships. Data models, APIs, and integration patterns.

## Code Changes
Files created, modified, or analyzed during our conversation. Specific code implementations, functions, and algorithms added. Configuration changes and structural modifications.

## Debugging & Issues
Problems encountered and their root causes. Solutions implemented and their effectiveness. Error messages, logs, and diagnostic information.

## Current Status
What we just completed successfully. Current state of the codebase and any ongoing work. Test results, validation steps, and verification performed.

## Pending Tasks
Immediate next steps and priorities. Planned features, improvements, and refactoring. Known issues, technical debt, and areas needing attention.

## User Preferences
Coding style, formatting, and organizational preferences. Communication patterns and feedback style. Tool choices and workflow preferences.

## Key Decisions
Important technical decisions made and their rationale. Alternative approaches considered and why they were rejected. Trade-offs accepted and their implications.

Focus on information essential for continuing the conversation effectively, including specific details about code, files, errors, and plans."""


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    """Rough token count: four characters per token."""
    return (len(text) + 3) // 4


def estimate_message_tokens(msg: Message) -> int:
    """Estimate tokens for a single message."""
    if not isinstance(msg, (UserMessage, AssistantMessage)):
        return 0
    if isinstance(msg.content, str):
        return estimate_tokens(msg.content) + 4  # role overhead
    total = 4
    for block in msg.content:
        match block:
            case TextBlock(text=text):
                total += estimate_tokens(text)
            case ToolUseBlock(input=args):
                total += estimate_tokens(json.dumps(args, default=str)) + 10
            case ToolResultBlock(content=content):
                total += estimate_tokens(content) + 10
    return total


def estimate_total_tokens(messages: Sequence[Message], system_prompt: Sequence[str] = ()) -> int:
    """Estimate total token count for a message history."""
    total = sum(estimate_tokens(part) for part in system_prompt) + 10  # system overhead
    for msg in messages:
        total += estimate_message_tokens(msg)
    return total


def needs_compaction(
    messages: Sequence[Message],
    system_prompt: Sequence[str],
    context_window: int,
    threshold: float = COMPACTION_THRESHOLD,
) -> bool:
    """Check if the message history needs compaction."""
    if len(messages) < MIN_MESSAGES_TO_COMPACT:
        return False
    total = estimate_total_tokens(messages, system_prompt)
    return total > int(context_window * threshold)


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class CompactionEvent:
    """Emitted when context is compacted."""

    tokens_before: int
    tokens_after: int
    summary: str
    strategy: str  # "summary", "extractive" or "none"
    recovered_files: tuple[str, ...] = ()


def _is_prompt(msg: Message) -> bool:
    """A user message typed by the user rather than carrying tool results."""
    if not isinstance(msg, UserMessage):
        return False
    if isinstance(msg.content, str):
        return True
    return not any(isinstance(b, ToolResultBlock) for b in msg.content)


def _find_safe_boundary(messages: Sequence[Message], max_tail_tokens: int) -> int:
    """Index of the first message to keep verbatim after the summary.

    The kept tail starts at the most recent user prompt so no tool result is
    separated from the tool use it answers. Returns ``len(messages)`` when no
    such tail fits in *max_tail_tokens*.
    """
    for idx in range(len(messages) - 1, 0, -1):
        if _is_prompt(messages[idx]):
            tail_tokens = sum(estimate_message_tokens(m) for m in messages[idx:])
            return idx if tail_tokens <= max_tail_tokens else len(messages)
    return len(messages)


def _build_summary(messages: Sequence[Message]) -> str:
    """Build a text summary of a list of messages.

    This is a simple extractive summary, used when the model cannot write
    one. It is fast and deterministic.
    """
    parts: list[str] = []
    tool_calls: list[str] = []
    files_mentioned: set[str] = set()

    for msg in messages:
        if not isinstance(msg, (UserMessage, AssistantMessage)):
            continue
        role = "User" if isinstance(msg, UserMessage) else "Assistant"
        if isinstance(msg.content, str):
            text = msg.content
            parts.append(f"{role}: {text[:200]}{'...' if len(text) > 200 else ''}")
            continue
        for block in msg.content:
            match block:
                case ToolUseBlock(name=name, input=args):
                    tool_calls.append(name)
                    if "file_path" in args:
                        files_mentioned.add(str(args["file_path"]))
                    elif "command" in args:
                        cmd = str(args["command"])
                        if len(cmd) > 80:
                            cmd = cmd[:80] + "..."
                        tool_calls.append(f"  $ {cmd}")
                case TextBlock(text=text) if text:
                    parts.append(f"{role}: {text[:100]}{'...' if len(text) > 100 else ''}")

    summary_lines = []
    if parts:
        summary_lines.append("Conversation included:")
        for p in parts[:10]:  # Cap at 10 entries
            summary_lines.append(f"  - {p}")

    if tool_calls:
        unique_tools = sorted(set(tool_calls))
        summary_lines.append(f"Tools used: {', '.join(unique_tools[:20])}")

    if files_mentioned:
        summary_lines.append(f"Files referenced: {', '.join(sorted(files_mentioned)[:20])}")

    if not summary_lines:
        summary_lines.append(f"({len(messages)} messages were exchanged.)")

    return "\n".join(summary_lines)


class ContextCompactor:
    """Replaces an oversized transcript with a summary.

    The model writes the summary when it can. Files the agent recently read
    are re-attached afterwards so their content survives. If summarizing
    fails for any reason the extractive summary is used instead; ``compact``
    itself never raises.
    """

    def __init__(
        self,
        model_client: ModelClient | None = None,
        *,
        context_window: int = 200_000,
        threshold: float = COMPACTION_THRESHOLD,
        freshness: FileFreshnessTracker | None = None,
    ) -> None:
        self._client = model_client
        self.context_window = context_window
        self.threshold = threshold
        self._freshness = freshness

    def should_compact(self, messages: Sequence[Message], system_prompt: Sequence[str] = ()) -> bool:
        return needs_compaction(messages, system_prompt, self.context_window, self.threshold)

    async def compact(
        self,
        messages: Sequence[Message],
        cancel_token: CancellationToken,
        *,
        model: str | None = None,
    ) -> tuple[list[Message], CompactionEvent]:
        """Compact *messages*.

        Returns:
            Tuple of (compacted_messages, compaction_event)
        """
        tokens_before = estimate_total_tokens(messages)
        if len(messages) < MIN_MESSAGES_TO_COMPACT:
            return list(messages), CompactionEvent(
                tokens_before, tokens_before, "No compaction needed.", "none",
            )

        boundary = _find_safe_boundary(
            messages, int(self.context_window * MAX_TAIL_FRACTION),
        )
        old_messages, kept = list(messages[:boundary]), list(messages[boundary:])

        strategy = "summary"
        try:
            summary = await self._summarize(old_messages, cancel_token, model)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Model summary failed, using extractive summary: %s", exc)
            summary = _build_summary(old_messages)
            strategy = "extractive"

        compacted: list[Message] = [
            create_user_message(COMPACTION_NOTICE),
            AssistantMessage(content=(TextBlock(summary),)),
        ]
        recovered = self._recover_files()
        compacted.extend(recovered)
        compacted.extend(kept)
        if isinstance(compacted[-1], AssistantMessage):
            compacted.append(create_user_message(CONTINUE_PROMPT))

        tokens_after = estimate_total_tokens(compacted)
        logger.info(
            "Compacted %d messages (%d -> ~%d tokens, %s)",
            len(old_messages), tokens_before, tokens_after, strategy,
        )
        return compacted, CompactionEvent(
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            summary=summary,
            strategy=strategy,
            recovered_files=tuple(m.tool_use_result for m in recovered),
        )

    async def _summarize(
        self,
        messages: list[Message],
        cancel_token: CancellationToken,
        model: str | None,
    ) -> str:
        if self._client is None:
            raise RuntimeError("no model client configured")
        request = [*normalize_messages_for_api(messages), create_user_message(COMPRESSION_PROMPT)]
        response = await self._client.complete(
            request,
            [SUMMARY_SYSTEM_PROMPT],
            0,
            [],
            cancel_token,
            model=model,
        )
        if response.is_api_error:
            raise RuntimeError(response.text)
        summary = response.text.strip()
        if not summary:
            raise RuntimeError("model returned an empty summary")
        return summary

    def _recover_files(self) -> list[UserMessage]:
        if self._freshness is None:
            return []
        messages = []
        for file in self._freshness.recover_files():
            note = " [truncated]" if file.truncated else ""
            messages.append(create_user_message(
                f"**Recovered File: {file.path}**\n\n```\n{file.content}\n```\n\n"
                f"*Automatically recovered ({file.tokens} tokens){note}*",
                tool_use_result=file.path,
            ))
        return messages
