"""Tool definition types and protocols."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from codeloop.core.cancellation import CancellationToken
    from codeloop.core.freshness import FileFreshnessTracker
    from codeloop.shell.session import ShellSession


@dataclass(frozen=True, slots=True)
class ToolParam:
    """A parameter for a tool."""

    name: str
    type: str  # "string", "integer", "number", "boolean", "array", "object"
    description: str
    required: bool = True
    enum: tuple[str, ...] | None = None
    default: Any = None
    items: dict[str, Any] | None = None  # For array types: JSON Schema for items


@dataclass(frozen=True, slots=True)
class ToolDef:
    """Definition of a tool exposed to the model."""

    name: str
    description: str
    parameters: tuple[ToolParam, ...] = ()

    def input_schema(self) -> dict[str, Any]:
        """JSON Schema object describing the tool input."""
        properties: dict[str, Any] = {}
        required: list[str] = []
        for param in self.parameters:
            schema: dict[str, Any] = {"type": param.type, "description": param.description}
            if param.enum:
                schema["enum"] = list(param.enum)
            if param.items is not None:
                schema["items"] = param.items
            properties[param.name] = schema
            if param.required:
                required.append(param.name)
        return {"type": "object", "properties": properties, "required": required}


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of a tool input check."""

    ok: bool
    message: str = ""

    @classmethod
    def success(cls) -> ValidationResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, message: str) -> ValidationResult:
        return cls(ok=False, message=message)


# ------------------------------------------------------------------
# Execution events
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ToolProgress:
    """Intermediate output while a tool is still running."""

    content: str


@dataclass(frozen=True, slots=True)
class ToolOutput:
    """Terminal event of a tool execution.

    ``data`` is the structured result kept in the transcript for the caller,
    ``result_for_assistant`` is the text the model sees.
    """

    data: Any
    result_for_assistant: str
    is_error: bool = False


ToolEvent = ToolProgress | ToolOutput


@dataclass(slots=True)
class QueryOptions:
    """Per-query options forwarded to tools and the model client."""

    model: str | None = None
    max_thinking_tokens: int = 0
    safe_mode: bool = False
    max_tool_concurrency: int = 10
    verbose: bool = False


@dataclass(slots=True)
class ExecutionContext:
    """Per-query bundle handed to every tool invocation.

    Passed by reference. Concurrent tools writing the same key of
    ``read_file_timestamps`` or ``extra`` race; the last write wins.
    """

    cancel_token: CancellationToken
    tools: list[Tool] = field(default_factory=list)
    cwd: Path = field(default_factory=Path.cwd)
    session_id: str = ""
    agent_id: str = ""
    message_id: str | None = None
    read_file_timestamps: dict[str, float] = field(default_factory=dict)
    options: QueryOptions = field(default_factory=QueryOptions)
    shell: ShellSession | None = None
    freshness: FileFreshnessTracker | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def find_tool(self, name: str) -> Tool | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


@runtime_checkable
class Tool(Protocol):
    """Protocol that all tools must implement."""

    @property
    def name(self) -> str:
        ...

    @property
    def definition(self) -> ToolDef:
        """Return the tool definition for the model."""
        ...

    def is_read_only(self) -> bool:
        ...

    def is_concurrency_safe(self) -> bool:
        ...

    def needs_permissions(self, input: dict[str, Any]) -> bool:
        ...

    def validate_schema(self, input: dict[str, Any]) -> ValidationResult:
        ...

    async def validate_input(
        self, input: dict[str, Any], ctx: ExecutionContext,
    ) -> ValidationResult:
        ...

    def call(self, input: dict[str, Any], ctx: ExecutionContext) -> AsyncIterator[ToolEvent]:
        """Run the tool. Yields zero or more ToolProgress then exactly one ToolOutput."""
        ...

    def describe(self, input: dict[str, Any]) -> str:
        """Short human-readable summary used by confirmation prompts."""
        ...
