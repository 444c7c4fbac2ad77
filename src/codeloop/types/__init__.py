"""Type definitions for codeloop."""

from codeloop.types.config import PermissionMode, QueryConfig, RunConfig, ShellConfig
from codeloop.types.messages import (
    CANCEL_MESSAGE,
    INTERRUPT_MESSAGE,
    INTERRUPT_MESSAGE_FOR_TOOL_USE,
    REJECT_MESSAGE,
    AssistantMessage,
    Message,
    ProgressMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from codeloop.types.providers import ModelClient, ModelInfo
from codeloop.types.tools import (
    ExecutionContext,
    QueryOptions,
    Tool,
    ToolDef,
    ToolOutput,
    ToolParam,
    ToolProgress,
    ValidationResult,
)

__all__ = [
    "CANCEL_MESSAGE",
    "INTERRUPT_MESSAGE",
    "INTERRUPT_MESSAGE_FOR_TOOL_USE",
    "REJECT_MESSAGE",
    "AssistantMessage",
    "ExecutionContext",
    "Message",
    "ModelClient",
    "ModelInfo",
    "PermissionMode",
    "ProgressMessage",
    "QueryConfig",
    "QueryOptions",
    "RunConfig",
    "ShellConfig",
    "TextBlock",
    "Tool",
    "ToolDef",
    "ToolOutput",
    "ToolParam",
    "ToolProgress",
    "ToolResultBlock",
    "ToolUseBlock",
    "UserMessage",
    "ValidationResult",
]
