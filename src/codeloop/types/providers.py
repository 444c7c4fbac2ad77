"""Model client protocol consumed by the query loop."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from codeloop.types.messages import AssistantMessage, UserMessage
from codeloop.types.tools import Tool

if TYPE_CHECKING:
    from codeloop.core.cancellation import CancellationToken


@dataclass(frozen=True, slots=True)
class ModelInfo:
    """Information about a supported model."""

    id: str
    display_name: str
    context_window: int
    max_output_tokens: int
    input_cost_per_mtok: float = 0.0
    output_cost_per_mtok: float = 0.0


@runtime_checkable
class ModelClient(Protocol):
    """Completes one conversation turn.

    Implementations must stop waiting (and may raise or return early) once
    ``cancel_token`` is cancelled. Errors raised here are converted by the
    loop into an API error assistant message.
    """

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
        ...
