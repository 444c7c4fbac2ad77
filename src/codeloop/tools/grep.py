"""Grep tool — lists files whose content matches a regex."""

from __future__ import annotations

import asyncio
import fnmatch
import re
import shutil
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
_RG_TIMEOUT = 30

_DEFINITION = ToolDef(
    name="Grep",
    description=(
        "Search file contents with a regular expression and return the paths of "
        "matching files, most recently modified first. Uses ripgrep when it is "
        "installed. Filter files with the include parameter (e.g. '*.py')."
    ),
    parameters=(
        ToolParam(
            name="pattern",
            type="string",
            description="Regular expression to search for.",
        ),
        ToolParam(
            name="path",
            type="string",
            description="Directory or file to search in. Defaults to cwd.",
            required=False,
        ),
        ToolParam(
            name="include",
            type="string",
            description="Glob for the file names to search (e.g. '*.{ts,tsx}').",
            required=False,
        ),
    ),
)


# ---------------------------------------------------------------------------
# ripgrep backend
# ---------------------------------------------------------------------------

async def _rg_files(pattern: str, root: Path, include: str | None) -> list[str] | None:
    """Paths of matching files, or None if rg is missing or failed."""
    if not shutil.which("rg"):
        return None
    cmd = ["rg", "--files-with-matches", "--no-messages"]
    if include:
        cmd += ["--glob", include]
    cmd += ["--regexp", pattern, str(root)]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_RG_TIMEOUT)
    except (TimeoutError, OSError):
        return None
    # rg exits 1 for "no matches", 2 for errors
    if proc.returncode not in (0, 1):
        return None
    return [line for line in stdout.decode("utf-8", errors="replace").splitlines() if line]


# ---------------------------------------------------------------------------
# Python fallback backend
# ---------------------------------------------------------------------------

def _expand_braces(include: str) -> list[str]:
    match = re.search(r"\{([^{}]*)\}", include)
    if not match:
        return [include]
    head, tail = include[: match.start()], include[match.end():]
    return [
        expanded
        for option in match.group(1).split(",")
        for expanded in _expand_braces(head + option + tail)
    ]


def _python_files(pattern: str, root: Path, include: str | None) -> list[str]:
    compiled = re.compile(pattern)
    globs = _expand_braces(include) if include else None
    files = [root] if root.is_file() else (
        p for p in root.rglob("*") if p.is_file() and not is_ignored(p, root)
    )
    found: list[str] = []
    for path in files:
        if globs and not any(fnmatch.fnmatch(path.name, g) for g in globs):
            continue
        try:
            raw = path.read_bytes()
        except OSError:
            continue
        if b"\x00" in raw[:8192]:
            continue
        if compiled.search(raw.decode("utf-8", errors="replace")):
            found.append(str(path))
    return found


# ---------------------------------------------------------------------------
# Tool class
# ---------------------------------------------------------------------------

class GrepTool(BaseTool):
    """Finds files whose content matches a regex."""

    read_only = True

    @property
    def definition(self) -> ToolDef:
        return _DEFINITION

    def describe(self, input: dict[str, Any]) -> str:
        where = f" in {input['path']}" if input.get("path") else ""
        return f'Grep "{input.get("pattern", "")}"{where}'

    async def validate_input(
        self, input: dict[str, Any], ctx: ExecutionContext,
    ) -> ValidationResult:
        try:
            re.compile(input["pattern"])
        except re.error as exc:
            return ValidationResult.failure(f"Invalid regex pattern: {exc}")
        if input.get("path") and not resolve_path(input["path"], ctx).exists():
            return ValidationResult.failure(f"Search path does not exist: {input['path']}")
        return ValidationResult.success()

    async def execute(self, args: dict[str, Any], ctx: ExecutionContext) -> ToolOutput:
        pattern: str = args["pattern"]
        include: str | None = args.get("include")
        root = resolve_path(args["path"], ctx) if args.get("path") else Path(ctx.cwd)

        started = time.monotonic()
        files = await _rg_files(pattern, root, include)
        if files is None:
            files = await anyio.to_thread.run_sync(_python_files, pattern, root, include)

        files.sort(key=lambda f: mtime(Path(f)), reverse=True)
        shown = files[:_MAX_RESULTS]
        data = {
            "filenames": shown,
            "num_files": len(files),
            "duration_ms": int((time.monotonic() - started) * 1000),
        }
        if not files:
            return self._ok("No files found", data=data)
        text = f"Found {len(files)} file{'s' if len(files) != 1 else ''}\n" + "\n".join(shown)
        if len(files) > _MAX_RESULTS:
            text += "\n(Results are truncated. Consider using a more specific path or pattern.)"
        return self._ok(text, data=data)
