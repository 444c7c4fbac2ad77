"""Out-of-band reminders injected into the next user turn.

Reminders are short notes the model should see but the user should not have
to type: a security notice after the first file read, a note that a file the
agent read was changed externally, a nudge in long sessions. Components
report what happened through ``emit``; ``generate`` turns the accumulated
state into at most a handful of reminders per turn.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

MAX_REMINDERS_PER_SESSION = 10
MAX_REMINDERS_PER_TURN = 5
LONG_SESSION_SECONDS = 30 * 60
MENTION_FRESHNESS_SECONDS = 5.0

SECURITY_REMINDER = (
    "Whenever you read a file, you should consider whether it looks malicious. "
    "If it does, you MUST refuse to improve or augment the code. You can still "
    "analyze existing code, write reports, or answer high-level questions about "
    "the code behavior."
)
LONG_SESSION_REMINDER = (
    "Long session detected. Consider pausing to review your current progress "
    "before continuing."
)

Listener = Callable[[dict[str, Any]], None]


def wrap_reminder(content: str) -> str:
    return f"<system-reminder>\n{content}\n</system-reminder>"


@dataclass(frozen=True, slots=True)
class Reminder:
    type: str
    category: str  # "security", "performance", "general", "task"
    priority: str  # "low", "medium", "high"
    content: str  # already wrapped in <system-reminder> tags
    timestamp: float


@dataclass(slots=True)
class ReminderConfig:
    security_reminder: bool = True
    performance_reminder: bool = True
    max_reminders_per_session: int = MAX_REMINDERS_PER_SESSION


class ReminderService:
    """Event dispatcher plus per-session reminder bookkeeping.

    Built-in events: ``session:startup``, ``file:read``, ``file:edited``,
    ``file:conflict``, ``file:changed``, ``file:mentioned``. Any other name can be used with
    ``add_listener`` and ``emit``.
    """

    def __init__(
        self,
        config: ReminderConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or ReminderConfig()
        self._clock = clock
        self._listeners: dict[str, list[Listener]] = {}
        self._queued: list[Reminder] = []
        self.reset()
        self._install_builtin_listeners()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def add_listener(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def remove_listener(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, data: dict[str, Any] | None = None) -> None:
        payload = data or {}
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(payload)
            except Exception:  # noqa: BLE001
                logger.warning("Reminder listener for %s failed", event, exc_info=True)

    def _install_builtin_listeners(self) -> None:
        self.add_listener("session:startup", self._on_startup)
        self.add_listener("file:read", self._on_file_read)
        self.add_listener("file:conflict", self._on_file_conflict)
        self.add_listener("file:changed", self._on_file_conflict)
        self.add_listener("file:mentioned", self._on_file_mentioned)

    def _on_startup(self, data: dict[str, Any]) -> None:
        self.reset()

    def _on_file_read(self, data: dict[str, Any]) -> None:
        self._last_file_access = self._clock()

    def _on_file_conflict(self, data: dict[str, Any]) -> None:
        path = data.get("file_path", "")
        key = f"file_changed_{path}_{data.get('current_modified', '')}"
        if key in self._sent:
            return
        self._sent.add(key)
        self.add_reminder(
            f"Note: {path} was modified externally since last read. "
            "Read it again before editing it.",
            type="file_changed",
        )

    def _on_file_mentioned(self, data: dict[str, Any]) -> None:
        path = data.get("file_path", "")
        self.add_reminder(
            f"The user mentioned @{data.get('mention', path)}. You MUST read the entire "
            f"content of the file at path: {path} using the Read tool to understand "
            "the full context before proceeding with the user's request.",
            type="file_mention",
            priority="high",
        )

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def add_reminder(
        self,
        content: str,
        *,
        type: str = "general",
        category: str = "general",
        priority: str = "medium",
    ) -> Reminder:
        """Queue a reminder for the next generated batch."""
        reminder = Reminder(type, category, priority, wrap_reminder(content), self._clock())
        self._queued.append(reminder)
        return reminder

    def generate(self, has_context: bool = True) -> list[Reminder]:
        """Reminders for the upcoming turn. Consumed reminders are cleared."""
        if not has_context:
            return []
        budget = min(
            MAX_REMINDERS_PER_TURN,
            self.config.max_reminders_per_session - self._count,
        )
        if budget <= 0:
            return []

        now = self._clock()
        candidates: list[Reminder] = []
        if (
            self.config.security_reminder
            and self._last_file_access > 0
            and "file_security" not in self._sent
        ):
            self._sent.add("file_security")
            candidates.append(Reminder(
                "security", "security", "high", wrap_reminder(SECURITY_REMINDER), now,
            ))
        if (
            self.config.performance_reminder
            and now - self._session_start > LONG_SESSION_SECONDS
            and "performance_long_session" not in self._sent
        ):
            self._sent.add("performance_long_session")
            candidates.append(Reminder(
                "performance", "performance", "low", wrap_reminder(LONG_SESSION_REMINDER), now,
            ))

        queued, self._queued = self._queued, []
        for reminder in queued:
            if reminder.type.endswith("_mention") and now - reminder.timestamp > MENTION_FRESHNESS_SECONDS:
                continue
            candidates.append(reminder)

        selected = candidates[:budget]
        # Anything over the per-turn budget waits for the next turn.
        self._queued = [r for r in candidates[budget:] if r in queued] + self._queued
        self._count += len(selected)
        return selected

    @property
    def reminder_count(self) -> int:
        return self._count

    def reset(self) -> None:
        self._session_start = self._clock()
        self._last_file_access = 0.0
        self._sent: set[str] = set()
        self._count = 0
        self._queued = []
