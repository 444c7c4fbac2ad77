"""Track which files the agent has read, and whether they changed since."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

EventEmitter = Callable[[str, dict[str, Any]], None]

MAX_FILES_TO_RECOVER = 5
MAX_TOKENS_PER_FILE = 10_000
MAX_TOTAL_FILE_TOKENS = 50_000
_EDIT_TOLERANCE = 0.1  # seconds
_EXCLUDED_FRAGMENTS = ("node_modules", ".git", ".cache", "dist/", "build/", "__pycache__")


@dataclass(slots=True)
class FileTimestamp:
    path: str
    last_read: float
    last_modified: float
    size: int
    last_agent_edit: float | None = None


@dataclass(frozen=True, slots=True)
class FreshnessResult:
    is_fresh: bool
    conflict: bool
    last_read: float | None = None
    current_modified: float | None = None


@dataclass(frozen=True, slots=True)
class RecoveredFile:
    path: str
    content: str
    tokens: int
    truncated: bool


class FileFreshnessTracker:
    """Per-session record of file reads and agent edits.

    Read records a file's mtime. Write and Edit consult ``check`` and refuse
    to overwrite a file that changed on disk after the agent last read it.
    """

    def __init__(self, emit: EventEmitter | None = None) -> None:
        self._emit = emit
        self._timestamps: dict[str, FileTimestamp] = {}
        self._conflicts: set[str] = set()

    def _event(self, name: str, data: dict[str, Any]) -> None:
        if self._emit is not None:
            self._emit(name, data)

    def record_read(self, path: str | os.PathLike[str]) -> None:
        key = str(path)
        try:
            stat = os.stat(key)
        except OSError:
            return
        record = FileTimestamp(
            path=key, last_read=time.time(), last_modified=stat.st_mtime, size=stat.st_size,
        )
        self._timestamps[key] = record
        self._event("file:read", {
            "file_path": key,
            "timestamp": record.last_read,
            "size": record.size,
            "modified": record.last_modified,
        })

    def record_edit(self, path: str | os.PathLike[str], content: str | None = None) -> None:
        key = str(path)
        now = time.time()
        try:
            stat = os.stat(key)
        except OSError:
            return
        existing = self._timestamps.get(key)
        if existing is None:
            self._timestamps[key] = FileTimestamp(
                path=key, last_read=now, last_modified=stat.st_mtime,
                size=stat.st_size, last_agent_edit=now,
            )
        else:
            existing.last_modified = stat.st_mtime
            existing.size = stat.st_size
            existing.last_agent_edit = now
        self._conflicts.discard(key)
        self._event("file:edited", {
            "file_path": key,
            "timestamp": now,
            "content_length": len(content or ""),
        })

    def check(self, path: str | os.PathLike[str]) -> FreshnessResult:
        """Compare the file's mtime with the one recorded at read time."""
        key = str(path)
        recorded = self._timestamps.get(key)
        if recorded is None:
            return FreshnessResult(is_fresh=True, conflict=False)
        try:
            stat = os.stat(key)
        except OSError:
            self._conflicts.add(key)
            return FreshnessResult(is_fresh=False, conflict=True, last_read=recorded.last_read)

        is_fresh = stat.st_mtime <= recorded.last_modified
        if not is_fresh:
            self._conflicts.add(key)
            self._event("file:conflict", {
                "file_path": key,
                "last_read": recorded.last_read,
                "last_modified": recorded.last_modified,
                "current_modified": stat.st_mtime,
                "size_diff": stat.st_size - recorded.size,
            })
        return FreshnessResult(
            is_fresh=is_fresh,
            conflict=not is_fresh,
            last_read=recorded.last_read,
            current_modified=stat.st_mtime,
        )

    def modification_note(self, path: str) -> str | None:
        """Describe an external change to a tracked file, if there was one."""
        recorded = self._timestamps.get(path)
        if recorded is None:
            return None
        try:
            stat = os.stat(path)
        except OSError:
            return f"Note: {path} was deleted since last read."
        if stat.st_mtime <= recorded.last_modified:
            return None
        if (
            recorded.last_agent_edit is not None
            and recorded.last_agent_edit >= recorded.last_modified - _EDIT_TOLERANCE
        ):
            return None
        return (
            f"Note: {path} was modified externally since last read. "
            "The file may have changed outside of this session."
        )

    def is_tracked(self, path: str) -> bool:
        return path in self._timestamps

    def tracked_files(self) -> list[str]:
        return list(self._timestamps)

    def conflicted_files(self) -> list[str]:
        return sorted(self._conflicts)

    def important_files(self, limit: int = MAX_FILES_TO_RECOVER) -> list[FileTimestamp]:
        """Most recently touched files worth re-attaching after compaction."""
        candidates = [
            ts for ts in self._timestamps.values()
            if not any(fragment in ts.path for fragment in _EXCLUDED_FRAGMENTS)
        ]
        candidates.sort(key=lambda ts: max(ts.last_read, ts.last_agent_edit or 0), reverse=True)
        return candidates[:limit]

    def recover_files(self) -> list[RecoveredFile]:
        """Read the important files back within the recovery token budget."""
        results: list[RecoveredFile] = []
        total = 0
        for info in self.important_files():
            try:
                content = Path(info.path).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.debug("Skipping %s during recovery: %s", info.path, exc)
                continue
            tokens = (len(content) + 3) // 4
            truncated = tokens > MAX_TOKENS_PER_FILE
            if truncated:
                content = content[: MAX_TOKENS_PER_FILE * 4]
                tokens = MAX_TOKENS_PER_FILE
            if total + tokens > MAX_TOTAL_FILE_TOKENS:
                break
            total += tokens
            results.append(RecoveredFile(info.path, content, tokens, truncated))
        return results

    def reset(self) -> None:
        self._timestamps.clear()
        self._conflicts.clear()
