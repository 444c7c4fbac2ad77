"""Edit tool — performs exact string replacement in files."""

from __future__ import annotations

from pathlib import Path
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

_CONTEXT_LINES = 3  # Lines of context shown around a change.

_DEFINITION = ToolDef(
    name="Edit",
    description=(
        "Perform an exact string replacement in a file. "
        "old_string must appear exactly once unless replace_all is true. "
        "An empty old_string creates a new file containing new_string. "
        "The file must have been read first."
    ),
    parameters=(
        ToolParam(
            name="file_path",
            type="string",
            description="Absolute or cwd-relative path to the file to edit.",
        ),
        ToolParam(
            name="old_string",
            type="string",
            description="The exact text to find in the file.",
        ),
        ToolParam(
            name="new_string",
            type="string",
            description="The text to replace old_string with.",
        ),
        ToolParam(
            name="replace_all",
            type="boolean",
            description="Replace all occurrences instead of requiring a unique match.",
            required=False,
            default=False,
        ),
    ),
)


def _snippet(text: str, new_string: str, n: int = _CONTEXT_LINES) -> str:
    """Lines around the first place *new_string* landed."""
    lines = text.splitlines()
    new_lines = new_string.splitlines() or [""]
    target = next((i for i, line in enumerate(lines) if new_lines[0] and new_lines[0] in line), 0)
    start = max(0, target - n)
    end = min(len(lines), target + len(new_lines) + n)
    return "\n".join(f"{i:>6}\t{line}" for i, line in enumerate(lines[start:end], start=start + 1))


class EditTool(BaseTool):
    """Performs exact string replacement in a file."""

    @property
    def definition(self) -> ToolDef:
        return _DEFINITION

    def describe(self, input: dict[str, Any]) -> str:
        return f"Edit {input.get('file_path', '')}"

    async def validate_input(
        self, input: dict[str, Any], ctx: ExecutionContext,
    ) -> ValidationResult:
        old_string: str = input["old_string"]
        new_string: str = input["new_string"]
        if old_string == new_string:
            return ValidationResult.failure(
                "No changes to make: old_string and new_string are exactly the same.",
            )

        path = resolve_path(input["file_path"], ctx)
        if not old_string:
            if path.exists():
                return ValidationResult.failure("Cannot create new file - file already exists.")
            return ValidationResult.success()
        if not path.exists():
            return ValidationResult.failure(f"File does not exist: {path}")
        if path.is_dir():
            return ValidationResult.failure(f"Path is a directory, not a file: {path}")

        reason = stale_reason(path, ctx)
        if reason:
            return ValidationResult.failure(reason)

        try:
            original = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return ValidationResult.failure(f"Cannot read file as text: {exc}")
        count = original.count(old_string)
        if count == 0:
            return ValidationResult.failure("String to replace not found in file.")
        if count > 1 and not input.get("replace_all"):
            return ValidationResult.failure(
                f"Found {count} matches of the string to replace. For safety, this tool "
                "only supports replacing exactly one occurrence at a time. Add more lines "
                "of context to your edit or set replace_all=true and try again.",
            )
        return ValidationResult.success()

    async def execute(self, args: dict[str, Any], ctx: ExecutionContext) -> ToolOutput:
        path: Path = resolve_path(args["file_path"], ctx)
        old_string: str = args["old_string"]
        new_string: str = args["new_string"]
        replace_all = bool(args.get("replace_all", False))

        if not old_string:
            original = ""
            updated = new_string
            replacements = 1
        else:
            try:
                original = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return self._error(f"File not found: {path}")
            except UnicodeDecodeError:
                return self._error(f"Cannot read file as text: {path}")
            replacements = original.count(old_string) if replace_all else 1
            updated = original.replace(old_string, new_string, -1 if replace_all else 1)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(updated, encoding="utf-8")
        except PermissionError:
            return self._error(f"Permission denied writing: {path}")
        except OSError as exc:
            return self._error(f"OS error writing file: {exc}")

        record_edit(path, ctx, updated)

        summary = (
            f"The file {path} has been updated ({replacements} replacement(s)). "
            f"Here's a snippet of the edited file:\n{_snippet(updated, new_string)}"
        )
        return self._ok(summary, data={
            "file_path": str(path),
            "old_string": old_string,
            "new_string": new_string,
            "replacements": replacements,
        })
