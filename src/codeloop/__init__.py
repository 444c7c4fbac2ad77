"""codeloop — the orchestration core of a coding agent.

Usage:
    import codeloop

    async for msg in codeloop.run("Fix the failing test"):
        match msg:
            case codeloop.AssistantMessage():
                print(msg.text)
            case codeloop.UserMessage(tool_use_result=data) if data is not None:
                print("tool finished")
"""

from codeloop.core.cancellation import CancellationToken
from codeloop.core.engine import run
from codeloop.core.execution import ToolExecutionController
from codeloop.core.loop import QueryLoop
from codeloop.errors import (
    AbortError,
    CodeloopError,
    ConfigError,
    ShellClosedError,
    ShellError,
    ShellNotFoundError,
)
from codeloop.permissions.gate import ConfirmationRequest, PermissionGate, PermissionResult
from codeloop.shell.session import ExecResult, ShellSession
from codeloop.types.config import PermissionMode, QueryConfig, RunConfig, ShellConfig
from codeloop.types.messages import (
    AssistantMessage,
    Message,
    ProgressMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from codeloop.types.tools import (
    ExecutionContext,
    Tool,
    ToolDef,
    ToolOutput,
    ToolParam,
    ToolProgress,
    ValidationResult,
)

__version__ = "0.1.0"

__all__ = [
    # Core API
    "run",
    "CancellationToken",
    "QueryLoop",
    "ToolExecutionController",
    "PermissionGate",
    "PermissionResult",
    "ConfirmationRequest",
    "ShellSession",
    "ExecResult",
    # Message types
    "AssistantMessage",
    "Message",
    "ProgressMessage",
    "TextBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    "UserMessage",
    # Configuration
    "PermissionMode",
    "QueryConfig",
    "RunConfig",
    "ShellConfig",
    # Tool types
    "ExecutionContext",
    "Tool",
    "ToolDef",
    "ToolOutput",
    "ToolParam",
    "ToolProgress",
    "ValidationResult",
    # Errors
    "AbortError",
    "CodeloopError",
    "ConfigError",
    "ShellClosedError",
    "ShellError",
    "ShellNotFoundError",
]
