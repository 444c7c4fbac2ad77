"""JSONL append-only transcript persistence."""

from __future__ import annotations

import dataclasses
import json
import logging
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from codeloop.types.messages import (
    AssistantMessage,
    Message,
    UserMessage,
    message_from_param,
    message_to_param,
)
from codeloop.types.session import SessionInfo

logger = logging.getLogger(__name__)


def _sessions_dir() -> Path:
    """Get the sessions directory, creating it if needed."""
    d = Path.home() / ".codeloop" / "sessions"
    d.mkdir(parents=True, exist_ok=True)
    return d


def new_session_id() -> str:
    """Generate a new session ID."""
    return uuid.uuid4().hex[:12]


class Session:
    """Append-only JSONL log of the user and assistant messages of a session.

    Progress messages are not recorded. Re-opening an existing session id
    loads its transcript back.
    """

    def __init__(
        self,
        session_id: str | None = None,
        cwd: str = ".",
        directory: Path | None = None,
    ):
        self.session_id = session_id or new_session_id()
        self._path = (directory or _sessions_dir()) / f"{self.session_id}.jsonl"
        self._messages: list[UserMessage | AssistantMessage] = []
        self._metadata: dict[str, Any] = {
            "session_id": self.session_id,
            "cwd": cwd,
            "created_at": datetime.now(UTC).isoformat(),
        }
        self._turns = 0
        self._total_cost = 0.0

        if self._path.exists():
            self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        """Load existing session from JSONL."""
        with open(self._path) as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt line %d in %s", lineno, self._path)
                    continue
                if entry.get("type") == "metadata":
                    self._metadata.update(entry.get("data", {}))
                elif entry.get("type") == "message":
                    msg = message_from_param(entry["data"])
                    if "uuid" in entry["data"]:
                        msg = dataclasses.replace(msg, uuid=entry["data"]["uuid"])
                    self._messages.append(msg)
                elif entry.get("type") == "turn":
                    self._turns = entry.get("turn", self._turns)
                    self._total_cost += entry.get("cost", 0.0)

    def _append(self, entry: dict[str, Any]) -> None:
        """Append an entry to the JSONL file."""
        with open(self._path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def save_metadata(self, model: str) -> None:
        """Save session metadata."""
        self._metadata["model"] = model
        self._metadata["updated_at"] = datetime.now(UTC).isoformat()
        self._append({"type": "metadata", "data": self._metadata})

    def add_message(self, msg: Message) -> None:
        """Record a message. Progress messages are ignored."""
        if not isinstance(msg, (UserMessage, AssistantMessage)):
            return
        self._messages.append(msg)
        data = message_to_param(msg)
        data["uuid"] = msg.uuid
        self._append({"type": "message", "data": data})
        if isinstance(msg, AssistantMessage):
            self.record_turn(msg.cost_usd)

    def record_turn(self, cost: float = 0.0) -> None:
        """Record a completed model turn."""
        self._turns += 1
        self._total_cost += cost
        self._append({
            "type": "turn",
            "turn": self._turns,
            "cost": cost,
            "timestamp": datetime.now(UTC).isoformat(),
        })

    @property
    def messages(self) -> list[UserMessage | AssistantMessage]:
        return list(self._messages)

    @property
    def turns(self) -> int:
        return self._turns

    @property
    def total_cost(self) -> float:
        return self._total_cost

    def get_info(self) -> SessionInfo:
        """Get session info summary."""
        now_iso = datetime.now(UTC).isoformat()
        created = self._metadata.get("created_at", now_iso)
        updated = self._metadata.get("updated_at", created)
        return SessionInfo(
            session_id=self.session_id,
            created_at=datetime.fromisoformat(created),
            updated_at=datetime.fromisoformat(updated),
            cwd=self._metadata.get("cwd", "."),
            model=self._metadata.get("model", "unknown"),
            messages=len(self._messages),
            turns=self._turns,
            total_cost=self._total_cost,
        )


def list_sessions(directory: Path | None = None) -> list[SessionInfo]:
    """List all saved sessions, most recent first."""
    sessions_dir = directory or _sessions_dir()
    results = []
    for path in sorted(sessions_dir.glob("*.jsonl"), key=lambda p: p.stat().st_mtime, reverse=True):
        try:
            results.append(Session(path.stem, directory=sessions_dir).get_info())
        except (OSError, KeyError, ValueError) as exc:
            logger.warning("Skipping unreadable session %s: %s", path.name, exc)
    return results
