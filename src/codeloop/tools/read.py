"""Read tool — reads files with optional line range."""

from __future__ import annotations

from typing import Any

from codeloop.tools.base import BaseTool
from codeloop.tools.paths import record_read, resolve_path
from codeloop.types.tools import (
    ExecutionContext,
    ToolDef,
    ToolOutput,
    ToolParam,
    ValidationResult,
)

_MAX_LINE_LENGTH = 2000
_DEFAULT_LIMIT = 2000
_MAX_FILE_BYTES = 256 * 1024

_DEFINITION = ToolDef(
    name="Read",
    description=(
        "Read a file from the local filesystem. "
        "Optionally specify an offset (1-based line number to start from) "
        "and a limit (number of lines to read). "
        "Lines longer than 2000 characters are truncated. "
        "Returns content with line numbers in cat -n style."
    ),
    parameters=(
        ToolParam(
            name="file_path",
            type="string",
            description="Absolute or cwd-relative path to the file to read.",
        ),
        ToolParam(
            name="offset",
            type="integer",
            description="1-based line number to start reading from.",
            required=False,
        ),
        ToolParam(
            name="limit",
            type="integer",
            description=f"Maximum number of lines to return (default {_DEFAULT_LIMIT}).",
            required=False,
        ),
    ),
)


class ReadTool(BaseTool):
    """Reads a file and returns its content with line numbers."""

    read_only = True

    @property
    def definition(self) -> ToolDef:
        return _DEFINITION

    def describe(self, input: dict[str, Any]) -> str:
        return f"Read {input.get('file_path', '')}"

    async def validate_input(
        self, input: dict[str, Any], ctx: ExecutionContext,
    ) -> ValidationResult:
        path = resolve_path(input["file_path"], ctx)
        if not path.exists():
            return ValidationResult.failure(f"File does not exist: {path}")
        if path.is_dir():
            return ValidationResult.failure(f"Path is a directory, not a file: {path}")
        size = path.stat().st_size
        if size > _MAX_FILE_BYTES and not (input.get("offset") or input.get("limit")):
            return ValidationResult.failure(
                f"File content ({size // 1024}KB) exceeds maximum allowed size "
                f"({_MAX_FILE_BYTES // 1024}KB). Use offset and limit to read "
                "specific portions of the file.",
            )
        return ValidationResult.success()

    async def execute(self, args: dict[str, Any], ctx: ExecutionContext) -> ToolOutput:
        path = resolve_path(args["file_path"], ctx)
        offset: int | None = args.get("offset")
        limit: int | None = args.get("limit")

        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return self._error(f"File not found: {path}")
        except PermissionError:
            return self._error(f"Permission denied: {path}")
        except UnicodeDecodeError:
            return self._error(
                f"Cannot read file as text (binary or unsupported encoding): {path}"
            )

        record_read(path, ctx)

        lines = text.splitlines()
        start_idx = max(0, (offset - 1) if offset is not None else 0)
        end_idx = start_idx + (limit if limit is not None else _DEFAULT_LIMIT)

        numbered: list[str] = []
        for i, line in enumerate(lines[start_idx:end_idx], start=start_idx + 1):
            if len(line) > _MAX_LINE_LENGTH:
                line = line[:_MAX_LINE_LENGTH] + " [truncated]"
            numbered.append(f"{i:>6}\t{line}")

        content = "\n".join(numbered) if numbered else "<file is empty>"
        if end_idx < len(lines):
            content += f"\n[...{len(lines) - end_idx} more lines not shown (offset={end_idx + 1})]"

        data = {
            "file_path": str(path),
            "num_lines": len(numbered),
            "start_line": start_idx + 1,
            "total_lines": len(lines),
        }
        return self._ok(content, data=data)
