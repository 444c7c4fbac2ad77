"""Base model client with shared retry logic, cancellation, and tool schema conversion."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

from codeloop.errors import AbortError
from codeloop.types.messages import AssistantMessage, UserMessage
from codeloop.types.tools import Tool

if TYPE_CHECKING:
    from codeloop.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that are worth retrying on — rate limits and server overload.
_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 529})
_MAX_RETRIES: int = 3
_BACKOFF_BASE: float = 1.0  # seconds; doubled each retry


def _is_retryable(exc: BaseException) -> bool:
    """Return True when *exc* represents a transient error worth retrying."""
    exc_type_name = type(exc).__name__
    # Anthropic SDK raises RateLimitError (429), OverloadedError (529) and
    # APIConnectionError for network failures.
    retryable_names = {"RateLimitError", "OverloadedError", "APIConnectionError"}
    if exc_type_name in retryable_names:
        return True
    status_code: int | None = getattr(exc, "status_code", None)
    if status_code is not None and status_code in _RETRYABLE_STATUS_CODES:
        return True
    return False


class BaseModelClient(ABC):
    """Abstract base class for model clients.

    Concrete sub-classes must implement :meth:`complete`.

    Parameters
    ----------
    model:
        The default model identifier (e.g. ``"claude-sonnet-4-6"``).
    """

    def __init__(self, model: str) -> None:
        self._model = model

    @property
    def model_id(self) -> str:
        """The model identifier used when a call does not name one."""
        return self._model

    def estimate_tokens(self, text: str) -> int:
        """Rough token count estimate — approximately 4 characters per token."""
        return max(0, len(text) // 4)

    @abstractmethod
    async def complete(
        self,
        messages: Sequence[UserMessage | AssistantMessage],
        system_prompt: Sequence[str],
        max_thinking_tokens: int,
        tools: Sequence[Tool],
        cancel_token: CancellationToken,
        *,
        safe_mode: bool = False,
        model: str | None = None,
    ) -> AssistantMessage:
        """Complete one conversation turn.

        Implementations wire retries through :meth:`_retry_with_backoff` and
        stop waiting on cancellation through :meth:`_until_cancelled`.
        """
        ...

    # ------------------------------------------------------------------
    # Protected helpers — available to sub-classes
    # ------------------------------------------------------------------

    async def _retry_with_backoff(
        self,
        coro_fn: Any,
        /,
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Call *coro_fn* with exponential back-off on transient errors.

        Up to :data:`_MAX_RETRIES` additional attempts are made when the
        raised exception is identified as retryable by :func:`_is_retryable`.
        The delay doubles after each failure, starting at :data:`_BACKOFF_BASE`
        seconds.

        Raises
        ------
        Exception
            Re-raises the last exception when all retries are exhausted.
        """
        delay = _BACKOFF_BASE
        for attempt in range(1, _MAX_RETRIES + 2):  # initial attempt + retries
            try:
                return await coro_fn(*args, **kwargs)
            except Exception as exc:
                if not _is_retryable(exc) or attempt > _MAX_RETRIES:
                    raise
                logger.warning(
                    "Transient error on attempt %d/%d (%s). Retrying in %.1fs.",
                    attempt,
                    _MAX_RETRIES + 1,
                    type(exc).__name__,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2.0
        raise RuntimeError("Unexpected state in _retry_with_backoff")  # pragma: no cover

    async def _until_cancelled(self, awaitable: Awaitable[T], cancel_token: CancellationToken) -> T:
        """Await *awaitable*, abandoning it if *cancel_token* fires first.

        Raises
        ------
        AbortError
            When the token was cancelled before the awaitable finished.
        """
        if cancel_token.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise AbortError(cancel_token.reason or "Request cancelled")
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            abandoned = not work.done()
            if abandoned:
                work.cancel()
        if abandoned:
            raise AbortError(cancel_token.reason or "Request cancelled")
        return work.result()

    def _make_tool_defs(self, tools: Sequence[Tool]) -> list[dict[str, Any]]:
        """Convert tools into ``name`` / ``description`` / ``input_schema`` dicts."""
        return [
            {
                "name": tool.definition.name,
                "description": tool.definition.description,
                "input_schema": tool.definition.input_schema(),
            }
            for tool in tools
        ]
