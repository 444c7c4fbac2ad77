"""Anthropic/Claude model client."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from anthropic import AsyncAnthropic

from codeloop.providers.base import BaseModelClient
from codeloop.providers.registry import ALIASES, DEFAULT_MODEL, MODELS
from codeloop.types.messages import (
    AssistantMessage,
    ContentBlock,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    UserMessage,
    message_to_param,
)
from codeloop.types.tools import Tool

if TYPE_CHECKING:
    from codeloop.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

_DEFAULT_MAX_TOKENS = 8_192


class AnthropicModelClient(BaseModelClient):
    """Model client for Anthropic's Claude models.

    Uses the official ``anthropic`` Python SDK. Each call is a single
    non-streaming ``messages.create`` request, retried on transient errors
    and abandoned as soon as the query's cancellation token fires.

    Parameters
    ----------
    api_key:
        Anthropic API key.  When *None* the SDK will fall back to the
        ``ANTHROPIC_API_KEY`` environment variable.
    model:
        Model ID or alias to use when a call does not name one.
    client:
        Pre-built SDK client, mainly for tests.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        client: Any | None = None,
    ) -> None:
        super().__init__(ALIASES.get(model, model))
        if client is not None:
            self._client = client
        else:
            self._client = AsyncAnthropic(api_key=api_key) if api_key else AsyncAnthropic()

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
        model_id = ALIASES.get(model, model) if model else self._model
        info = MODELS.get(model_id)
        max_tokens = info.max_output_tokens if info else _DEFAULT_MAX_TOKENS

        params: dict[str, Any] = {
            "model": model_id,
            "max_tokens": max_tokens,
            "messages": [message_to_param(m) for m in messages],
        }
        system = [{"type": "text", "text": part} for part in system_prompt if part]
        if system:
            params["system"] = system
        if tools:
            params["tools"] = self._make_tool_defs(tools)
        if max_thinking_tokens > 0:
            params["thinking"] = {"type": "enabled", "budget_tokens": max_thinking_tokens}
            params["max_tokens"] = max(max_tokens, max_thinking_tokens + 1)

        start = time.monotonic()
        response = await self._until_cancelled(
            self._retry_with_backoff(self._client.messages.create, **params),
            cancel_token,
        )
        duration_ms = int((time.monotonic() - start) * 1000)

        content = tuple(self._from_anthropic_blocks(response.content))
        cost = self._cost(model_id, response.usage)
        logger.debug(
            "Model %s answered in %dms (stop_reason=%s, cost=$%.4f)",
            model_id, duration_ms, response.stop_reason, cost,
        )
        return AssistantMessage(content=content, cost_usd=cost, duration_ms=duration_ms)

    # ------------------------------------------------------------------
    # Conversion helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _from_anthropic_blocks(blocks: Sequence[Any]) -> list[ContentBlock]:
        """Convert SDK content blocks, dropping types the loop does not use."""
        result: list[ContentBlock] = []
        for block in blocks:
            match block.type:
                case "text":
                    result.append(TextBlock(block.text))
                case "tool_use":
                    result.append(ToolUseBlock(block.id, block.name, dict(block.input or {})))
                case "thinking":
                    result.append(ThinkingBlock(block.thinking, getattr(block, "signature", "")))
                case other:
                    logger.debug("Ignoring %s content block", other)
        return result

    @staticmethod
    def _cost(model_id: str, usage: Any) -> float:
        info = MODELS.get(model_id)
        if info is None or usage is None:
            return 0.0
        in_cost = usage.input_tokens * info.input_cost_per_mtok
        out_cost = usage.output_tokens * info.output_cost_per_mtok
        return (in_cost + out_cost) / 1_000_000
