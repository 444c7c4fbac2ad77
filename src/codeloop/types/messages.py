"""Message types for the codeloop query loop."""

from __future__ import annotations

import uuid as _uuid
from dataclasses import dataclass, field
from typing import Any

INTERRUPT_MESSAGE = "[Request interrupted by user]"
INTERRUPT_MESSAGE_FOR_TOOL_USE = "[Request interrupted by user for tool use]"
CANCEL_MESSAGE = (
    "The user doesn't want to take this action right now. STOP what you are doing "
    "and wait for the user to tell you how to proceed."
)
REJECT_MESSAGE = (
    "The user doesn't want to proceed with this tool use. The tool use was rejected "
    "(eg. if it was a file edit, the new_string was NOT written to the file). STOP "
    "what you are doing and wait for the user to tell you how to proceed."
)
NO_RESPONSE_REQUESTED = "No response requested."


def _new_uuid() -> str:
    return str(_uuid.uuid4())


# ------------------------------------------------------------------
# Content blocks
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TextBlock:
    """Plain text content."""

    text: str

    def to_param(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True, slots=True)
class ToolUseBlock:
    """The model asks for a tool invocation."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_param(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True, slots=True)
class ToolResultBlock:
    """The outcome of one tool invocation, addressed to its tool use id."""

    tool_use_id: str
    content: str
    is_error: bool = False

    def to_param(self) -> dict[str, Any]:
        param: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            param["is_error"] = True
        return param


@dataclass(frozen=True, slots=True)
class ThinkingBlock:
    """Extended thinking. Sent back unchanged so the model can verify it."""

    thinking: str
    signature: str = ""

    def to_param(self) -> dict[str, Any]:
        return {"type": "thinking", "thinking": self.thinking, "signature": self.signature}


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock | ThinkingBlock


# ------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class UserMessage:
    """A user turn. Tool results travel back to the model as user messages."""

    content: str | tuple[ContentBlock, ...]
    uuid: str = field(default_factory=_new_uuid)
    tool_use_result: Any = None  # Structured data from the tool, never sent to the model

    @property
    def tool_result(self) -> ToolResultBlock | None:
        if isinstance(self.content, tuple):
            for block in self.content:
                if isinstance(block, ToolResultBlock):
                    return block
        return None


@dataclass(frozen=True, slots=True)
class AssistantMessage:
    """A model turn."""

    content: tuple[ContentBlock, ...]
    uuid: str = field(default_factory=_new_uuid)
    cost_usd: float = 0.0
    duration_ms: int = 0
    is_api_error: bool = False

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))


@dataclass(frozen=True, slots=True)
class ProgressMessage:
    """Intermediate output from a running tool. Shown to the user only."""

    tool_use_id: str
    sibling_tool_use_ids: frozenset[str]
    content: AssistantMessage
    uuid: str = field(default_factory=_new_uuid)


Message = UserMessage | AssistantMessage | ProgressMessage


# ------------------------------------------------------------------
# Constructors
# ------------------------------------------------------------------


def create_user_message(
    content: str | list[ContentBlock] | tuple[ContentBlock, ...],
    tool_use_result: Any = None,
) -> UserMessage:
    if isinstance(content, list):
        content = tuple(content)
    return UserMessage(content=content, tool_use_result=tool_use_result)


def create_assistant_message(text: str) -> AssistantMessage:
    return AssistantMessage(content=(TextBlock(text or NO_RESPONSE_REQUESTED),))


def create_assistant_api_error_message(text: str) -> AssistantMessage:
    return AssistantMessage(content=(TextBlock(text),), is_api_error=True)


def create_tool_result_message(
    tool_use_id: str,
    content: str,
    *,
    is_error: bool = False,
    data: Any = None,
) -> UserMessage:
    return UserMessage(
        content=(ToolResultBlock(tool_use_id, content, is_error),),
        tool_use_result=data,
    )


def create_tool_result_stop_message(tool_use_id: str) -> UserMessage:
    """Result recorded for a tool invocation that was cancelled."""
    return create_tool_result_message(tool_use_id, CANCEL_MESSAGE, is_error=True)


def create_progress_message(
    tool_use_id: str,
    sibling_tool_use_ids: frozenset[str],
    content: str,
) -> ProgressMessage:
    return ProgressMessage(
        tool_use_id=tool_use_id,
        sibling_tool_use_ids=sibling_tool_use_ids,
        content=create_assistant_message(content),
    )


# ------------------------------------------------------------------
# Wire conversion
# ------------------------------------------------------------------


def message_to_param(message: UserMessage | AssistantMessage) -> dict[str, Any]:
    """Convert a message to the role/content dict the model API expects."""
    role = "user" if isinstance(message, UserMessage) else "assistant"
    if isinstance(message.content, str):
        return {"role": role, "content": message.content}
    return {"role": role, "content": [b.to_param() for b in message.content]}


def normalize_messages_for_api(
    messages: list[Message],
) -> list[UserMessage | AssistantMessage]:
    """Drop progress messages and API error placeholders before a model call."""
    return [
        m for m in messages
        if isinstance(m, UserMessage)
        or (isinstance(m, AssistantMessage) and not m.is_api_error)
    ]


def _block_from_param(param: dict[str, Any]) -> ContentBlock:
    match param.get("type"):
        case "text":
            return TextBlock(param["text"])
        case "tool_use":
            return ToolUseBlock(param["id"], param["name"], dict(param.get("input") or {}))
        case "thinking":
            return ThinkingBlock(param.get("thinking", ""), param.get("signature", ""))
        case "tool_result":
            content = param.get("content", "")
            if isinstance(content, list):
                content = "".join(c.get("text", "") for c in content if isinstance(c, dict))
            return ToolResultBlock(param["tool_use_id"], content, bool(param.get("is_error")))
        case other:
            raise ValueError(f"Unsupported content block type: {other!r}")


def message_from_param(param: dict[str, Any]) -> UserMessage | AssistantMessage:
    """Inverse of ``message_to_param``."""
    content = param["content"]
    blocks = content if isinstance(content, str) else tuple(_block_from_param(b) for b in content)
    if param["role"] == "user":
        return UserMessage(content=blocks)
    if isinstance(blocks, str):
        blocks = (TextBlock(blocks),)
    return AssistantMessage(content=blocks)
