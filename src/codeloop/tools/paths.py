"""Path helpers shared by the file tools."""

from __future__ import annotations

from pathlib import Path

from codeloop.types.tools import ExecutionContext

IGNORED_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv"})


def resolve_path(raw: str, ctx: ExecutionContext) -> Path:
    """Absolute path for *raw*, relative paths taken from the context cwd."""
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = Path(ctx.cwd) / path
    return path.resolve()


def is_ignored(path: Path, root: Path) -> bool:
    try:
        rel = path.relative_to(root)
    except ValueError:
        return False
    return any(part in IGNORED_DIRS for part in rel.parts)


def mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0


def record_read(path: Path, ctx: ExecutionContext) -> None:
    ctx.read_file_timestamps[str(path)] = mtime(path)
    if ctx.freshness is not None:
        ctx.freshness.record_read(path)


def record_edit(path: Path, ctx: ExecutionContext, content: str) -> None:
    ctx.read_file_timestamps[str(path)] = mtime(path)
    if ctx.freshness is not None:
        ctx.freshness.record_edit(path, content)


_STALE_MESSAGE = (
    "File has been modified since read, either by the user or by a linter. "
    "Read it again before attempting to write it."
)


def stale_reason(path: Path, ctx: ExecutionContext) -> str | None:
    """Why writing *path* now would clobber changes the agent has not seen."""
    if not path.exists():
        return None
    key = str(path)
    if key not in ctx.read_file_timestamps:
        return "File has not been read yet. Read it first before writing to it."
    if ctx.freshness is not None:
        if ctx.freshness.check(path).conflict:
            note = ctx.freshness.modification_note(key)
            return f"{_STALE_MESSAGE}\n{note}" if note else _STALE_MESSAGE
    elif mtime(path) > ctx.read_file_timestamps[key]:
        return _STALE_MESSAGE
    return None
