"""Write tool — creates or overwrites files."""

from __future__ import annotations

from typing import Any

from codeloop.tools.base import BaseTool
from codeloop.tools.paths import record_edit, resolve_path, stale_reason
from codeloop.types.tools import (
    ExecutionContext,
    ToolDef,
    ToolOutput,
    ToolParam,
    ValidationResult,
)

_DEFINITION = ToolDef(
    name="Write",
    description=(
        "Create or overwrite a file with the given content. "
        "Parent directories are created automatically. "
        "An existing file must be read first and must not have changed since."
    ),
    parameters=(
        ToolParam(
            name="file_path",
            type="string",
            description="Absolute or cwd-relative path to the file to write.",
        ),
        ToolParam(
            name="content",
            type="string",
            description="The full content to write to the file.",
        ),
    ),
)


class WriteTool(BaseTool):
    """Creates or overwrites a file with the provided content."""

    @property
    def definition(self) -> ToolDef:
        return _DEFINITION

    def describe(self, input: dict[str, Any]) -> str:
        return f"Write {input.get('file_path', '')}"

    async def validate_input(
        self, input: dict[str, Any], ctx: ExecutionContext,
    ) -> ValidationResult:
        path = resolve_path(input["file_path"], ctx)
        if path.is_dir():
            return ValidationResult.failure(f"Path is a directory, not a file: {path}")
        reason = stale_reason(path, ctx)
        if reason:
            return ValidationResult.failure(reason)
        return ValidationResult.success()

    async def execute(self, args: dict[str, Any], ctx: ExecutionContext) -> ToolOutput:
        path = resolve_path(args["file_path"], ctx)
        content: str = args["content"]
        existed = path.exists()

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except PermissionError:
            return self._error(f"Permission denied writing to: {path}")
        except OSError as exc:
            return self._error(f"OS error writing file: {exc}")

        record_edit(path, ctx, content)

        lines = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        verb = "updated" if existed else "created"
        return self._ok(
            f"File {verb}: {path} ({lines} lines)",
            data={"type": "update" if existed else "create", "file_path": str(path), "lines": lines},
        )
