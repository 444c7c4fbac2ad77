"""Tests for codeloop.providers — the Anthropic model client and catalogue."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from codeloop.core.cancellation import CancellationToken
from codeloop.errors import AbortError
from codeloop.providers import AnthropicModelClient, resolve_model
from codeloop.providers import base as base_module
from codeloop.types.messages import (
    AssistantMessage,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    create_user_message,
)
from tests.conftest import ScriptedTool


class FakeMessages:
    """Stands in for ``AsyncAnthropic().messages``."""

    def __init__(self, responses: list[Any]):
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    async def create(self, **params: Any) -> Any:
        self.requests.append(params)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if response == "hang":
            await asyncio.Event().wait()
        return response


def _response(*blocks: Any, input_tokens: int = 1000, output_tokens: int = 100) -> SimpleNamespace:
    return SimpleNamespace(
        content=list(blocks),
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
        stop_reason="end_turn",
    )


def _client(*responses: Any, model: str = "sonnet") -> tuple[AnthropicModelClient, FakeMessages]:
    messages = FakeMessages(list(responses))
    return AnthropicModelClient(model=model, client=SimpleNamespace(messages=messages)), messages


class RateLimitError(Exception):
    status_code = 429


class TestRegistry:
    def test_resolve_alias(self):
        assert resolve_model("sonnet").id == "claude-sonnet-4-6"
        assert resolve_model("claude-opus-4-6").display_name == "Claude Opus 4.6"

    def test_resolve_unknown(self):
        with pytest.raises(KeyError, match="Unknown model"):
            resolve_model("nonexistent-model")


class TestAnthropicModelClient:
    def test_alias_resolved_at_construction(self):
        client, _ = _client()
        assert client.model_id == "claude-sonnet-4-6"

    @pytest.mark.asyncio
    async def test_request_params(self):
        client, fake = _client(_response(SimpleNamespace(type="text", text="Hi")))
        await client.complete(
            [create_user_message("Hello")],
            ["You are helpful.", "", "Be brief."],
            0,
            [ScriptedTool("Lookup")],
            CancellationToken(),
        )

        params = fake.requests[0]
        assert params["model"] == "claude-sonnet-4-6"
        assert params["max_tokens"] == 16_384
        assert params["messages"] == [{"role": "user", "content": "Hello"}]
        assert params["system"] == [
            {"type": "text", "text": "You are helpful."},
            {"type": "text", "text": "Be brief."},
        ]
        assert params["tools"][0]["name"] == "Lookup"
        assert params["tools"][0]["input_schema"]["type"] == "object"
        assert "thinking" not in params

    @pytest.mark.asyncio
    async def test_thinking_budget(self):
        client, fake = _client(_response(SimpleNamespace(type="text", text="Hi")), model="haiku")
        await client.complete([create_user_message("x")], [], 10_000, [], CancellationToken())
        params = fake.requests[0]
        assert params["thinking"] == {"type": "enabled", "budget_tokens": 10_000}
        assert params["max_tokens"] == 10_001
        assert "tools" not in params
        assert "system" not in params

    @pytest.mark.asyncio
    async def test_per_call_model(self):
        client, fake = _client(_response(SimpleNamespace(type="text", text="Hi")))
        await client.complete([create_user_message("x")], [], 0, [], CancellationToken(), model="opus")
        assert fake.requests[0]["model"] == "claude-opus-4-6"

    @pytest.mark.asyncio
    async def test_response_conversion_and_cost(self):
        client, _ = _client(_response(
            SimpleNamespace(type="thinking", thinking="hmm", signature="sig"),
            SimpleNamespace(type="text", text="Reading."),
            SimpleNamespace(type="tool_use", id="t1", name="Read", input={"file_path": "a.py"}),
            SimpleNamespace(type="server_tool_use"),
        ))
        message = await client.complete([create_user_message("x")], [], 0, [], CancellationToken())

        assert isinstance(message, AssistantMessage)
        assert message.content == (
            ThinkingBlock("hmm", "sig"),
            TextBlock("Reading."),
            ToolUseBlock("t1", "Read", {"file_path": "a.py"}),
        )
        # 1000 input at $3/M plus 100 output at $15/M
        assert message.cost_usd == pytest.approx(0.0045)

    @pytest.mark.asyncio
    async def test_unknown_model_has_no_cost(self):
        client, fake = _client(_response(SimpleNamespace(type="text", text="Hi")), model="custom-model")
        message = await client.complete([create_user_message("x")], [], 0, [], CancellationToken())
        assert message.cost_usd == 0.0
        assert fake.requests[0]["max_tokens"] == 8_192

    @pytest.mark.asyncio
    async def test_cancel_abandons_request(self):
        client, _ = _client("hang")
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        with pytest.raises(AbortError):
            await client.complete([create_user_message("x")], [], 0, [], token)

    @pytest.mark.asyncio
    async def test_pre_cancelled(self):
        client, fake = _client("hang")
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AbortError):
            await client.complete([create_user_message("x")], [], 0, [], token)
        assert fake.requests == []


class TestRetry:
    @pytest.fixture
    def no_sleep(self, monkeypatch: pytest.MonkeyPatch) -> list[float]:
        delays: list[float] = []

        async def fake_sleep(delay: float) -> None:
            delays.append(delay)

        monkeypatch.setattr(base_module.asyncio, "sleep", fake_sleep)
        return delays

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, no_sleep):
        client, fake = _client(
            RateLimitError("slow down"),
            RateLimitError("slow down"),
            _response(SimpleNamespace(type="text", text="Finally")),
        )
        message = await client.complete([create_user_message("x")], [], 0, [], CancellationToken())
        assert message.text == "Finally"
        assert len(fake.requests) == 3
        assert no_sleep == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, no_sleep):
        client, fake = _client(*[RateLimitError("slow down")] * 4)
        with pytest.raises(RateLimitError):
            await client.complete([create_user_message("x")], [], 0, [], CancellationToken())
        assert len(fake.requests) == 4

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, no_sleep):
        client, fake = _client(ValueError("bad request"))
        with pytest.raises(ValueError):
            await client.complete([create_user_message("x")], [], 0, [], CancellationToken())
        assert len(fake.requests) == 1
        assert no_sleep == []
