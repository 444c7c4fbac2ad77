"""Cooperative cancellation shared by a query and everything it spawns."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from codeloop.errors import AbortError

logger = logging.getLogger(__name__)


class CancellationToken:
    """A one-shot cancellation signal.

    One token is created per top-level query and shared by the model call,
    every tool invocation, permission prompts and shell commands. Observers
    either poll ``cancelled``, await ``wait()``, or register a callback that
    runs synchronously when ``cancel()`` is first called.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Signal cancellation. Further calls are no-ops."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # noqa: BLE001
                logger.exception("Cancellation callback failed")

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run *callback* on cancellation, immediately if already cancelled."""
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortError(self._reason or "Operation cancelled")

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
