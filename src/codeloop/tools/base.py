"""Base tool class with shared logic."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from codeloop.types.tools import (
    ExecutionContext,
    ToolDef,
    ToolEvent,
    ToolOutput,
    ValidationResult,
)

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


class BaseTool(ABC):
    """Base class for all tools.

    Subclasses provide ``definition`` and ``execute``. Tools that stream
    progress override ``call`` instead and yield ToolProgress events before
    their ToolOutput.
    """

    read_only: bool = False

    @property
    @abstractmethod
    def definition(self) -> ToolDef:
        ...

    @abstractmethod
    async def execute(self, args: dict[str, Any], ctx: ExecutionContext) -> ToolOutput:
        ...

    @property
    def name(self) -> str:
        return self.definition.name

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def is_read_only(self) -> bool:
        return self.read_only

    def is_concurrency_safe(self) -> bool:
        return self.is_read_only()

    def needs_permissions(self, input: dict[str, Any]) -> bool:
        return not self.is_read_only()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_schema(self, input: dict[str, Any]) -> ValidationResult:
        """Check *input* against the parameter list of the definition."""
        if not isinstance(input, dict):
            return ValidationResult.failure("Input must be an object")
        for param in self.definition.parameters:
            if param.name not in input or input[param.name] is None:
                if param.required:
                    return ValidationResult.failure(
                        f"The required parameter `{param.name}` is missing",
                    )
                continue
            value = input[param.name]
            expected = _JSON_TYPES.get(param.type)
            if expected is not None:
                wrong_bool = isinstance(value, bool) and param.type in ("integer", "number")
                if wrong_bool or not isinstance(value, expected):
                    return ValidationResult.failure(
                        f"The parameter `{param.name}` type is expected as "
                        f"`{param.type}` but provided as `{type(value).__name__}`",
                    )
            if param.enum and value not in param.enum:
                return ValidationResult.failure(
                    f"The parameter `{param.name}` must be one of {list(param.enum)}",
                )
        return ValidationResult.success()

    async def validate_input(
        self, input: dict[str, Any], ctx: ExecutionContext,
    ) -> ValidationResult:
        return ValidationResult.success()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def call(self, input: dict[str, Any], ctx: ExecutionContext) -> AsyncIterator[ToolEvent]:
        yield await self.execute(input, ctx)

    def describe(self, input: dict[str, Any]) -> str:
        args = ", ".join(f"{k}: {json.dumps(v)}" for k, v in input.items())
        return f"{self.name}({args})"

    def _error(self, msg: str, data: Any = None) -> ToolOutput:
        return ToolOutput(data=msg if data is None else data, result_for_assistant=msg, is_error=True)

    def _ok(self, content: str, data: Any = None) -> ToolOutput:
        return ToolOutput(data=content if data is None else data, result_for_assistant=content)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
