"""Glob tool — finds files matching a glob pattern."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import anyio.to_thread

from codeloop.tools.base import BaseTool
from codeloop.tools.paths import is_ignored, mtime, resolve_path
from codeloop.types.tools import (
    ExecutionContext,
    ToolDef,
    ToolOutput,
    ToolParam,
    ValidationResult,
)

_MAX_RESULTS = 100

_DEFINITION = ToolDef(
    name="Glob",
    description=(
        "Find files whose paths match a glob pattern such as '**/*.py'. "
        f"Returns up to {_MAX_RESULTS} paths sorted by modification time, "
        "newest first. Ignores .git, node_modules, __pycache__ and .venv."
    ),
    parameters=(
        ToolParam(
            name="pattern",
            type="string",
            description="Glob pattern to match against file paths (e.g. '**/*.py').",
        ),
        ToolParam(
            name="path",
            type="string",
            description="Directory to search in. Defaults to the current working directory.",
            required=False,
        ),
    ),
)


def _glob(root: Path, pattern: str) -> list[Path]:
    matched = [p for p in root.glob(pattern) if p.is_file() and not is_ignored(p, root)]
    matched.sort(key=mtime, reverse=True)
    return matched


class GlobTool(BaseTool):
    """Finds files by glob pattern, sorted by modification time."""

    read_only = True

    @property
    def definition(self) -> ToolDef:
        return _DEFINITION

    def describe(self, input: dict[str, Any]) -> str:
        where = f" in {input['path']}" if input.get("path") else ""
        return f'Glob "{input.get("pattern", "")}"{where}'

    async def validate_input(
        self, input: dict[str, Any], ctx: ExecutionContext,
    ) -> ValidationResult:
        if input.get("path"):
            root = resolve_path(input["path"], ctx)
            if not root.is_dir():
                return ValidationResult.failure(f"Search path is not a directory: {root}")
        return ValidationResult.success()

    async def execute(self, args: dict[str, Any], ctx: ExecutionContext) -> ToolOutput:
        pattern: str = args["pattern"]
        root = resolve_path(args["path"], ctx) if args.get("path") else Path(ctx.cwd)

        started = time.monotonic()
        try:
            matched = await anyio.to_thread.run_sync(_glob, root, pattern)
        except (ValueError, NotImplementedError) as exc:
            return self._error(f"Invalid glob pattern: {exc}")

        filenames = [str(p) for p in matched[:_MAX_RESULTS]]
        truncated = len(matched) > _MAX_RESULTS
        data = {
            "filenames": filenames,
            "num_files": len(filenames),
            "truncated": truncated,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }
        if not filenames:
            return self._ok("No files found", data=data)
        text = "\n".join(filenames)
        if truncated:
            text += "\n(Results are truncated. Consider using a more specific path or pattern.)"
        return self._ok(text, data=data)
