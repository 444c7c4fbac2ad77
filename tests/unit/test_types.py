"""Tests for message types, wire conversion and the cancellation token."""

from __future__ import annotations

import asyncio

import pytest

from codeloop.core.cancellation import CancellationToken
from codeloop.errors import AbortError
from codeloop.types.messages import (
    CANCEL_MESSAGE,
    NO_RESPONSE_REQUESTED,
    AssistantMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    create_assistant_api_error_message,
    create_assistant_message,
    create_progress_message,
    create_tool_result_stop_message,
    create_user_message,
    message_from_param,
    message_to_param,
    normalize_messages_for_api,
)


class TestMessages:
    def test_assistant_helpers(self):
        msg = AssistantMessage(content=(
            ThinkingBlock("plan"),
            TextBlock("Reading "),
            ToolUseBlock("t1", "Read", {"file_path": "a.py"}),
            TextBlock("now."),
        ))
        assert msg.text == "Reading now."
        assert [t.id for t in msg.tool_uses] == ["t1"]

    def test_empty_assistant_text(self):
        assert create_assistant_message("").text == NO_RESPONSE_REQUESTED

    def test_stop_message(self):
        result = create_tool_result_stop_message("t9").tool_result
        assert result == ToolResultBlock("t9", CANCEL_MESSAGE, True)

    def test_user_list_content_becomes_tuple(self):
        msg = create_user_message([TextBlock("a")])
        assert msg.content == (TextBlock("a"),)
        assert msg.tool_result is None

    def test_uuids_are_unique(self):
        assert create_user_message("a").uuid != create_user_message("a").uuid

    def test_normalize_drops_progress_and_api_errors(self):
        prompt = create_user_message("hi")
        answer = create_assistant_message("hello")
        messages = [
            prompt,
            create_progress_message("t1", frozenset({"t1"}), "working"),
            create_assistant_api_error_message("API Error: boom"),
            answer,
        ]
        assert normalize_messages_for_api(messages) == [prompt, answer]


class TestWireConversion:
    def test_tool_result_param(self):
        msg = create_tool_result_stop_message("t1")
        assert message_to_param(msg) == {
            "role": "user",
            "content": [{
                "type": "tool_result", "tool_use_id": "t1", "content": CANCEL_MESSAGE, "is_error": True,
            }],
        }

    def test_from_param_blocks(self):
        msg = message_from_param({
            "role": "assistant",
            "content": [
                {"type": "thinking", "thinking": "hmm", "signature": "s"},
                {"type": "text", "text": "ok"},
                {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}},
            ],
        })
        assert msg.content == (
            ThinkingBlock("hmm", "s"), TextBlock("ok"), ToolUseBlock("t1", "Bash", {"command": "ls"}),
        )

    def test_tool_result_list_content_is_joined(self):
        msg = message_from_param({
            "role": "user",
            "content": [{
                "type": "tool_result",
                "tool_use_id": "t1",
                "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
            }],
        })
        assert msg.tool_result == ToolResultBlock("t1", "ab", False)

    def test_assistant_string_content(self):
        assert message_from_param({"role": "assistant", "content": "hi"}).text == "hi"

    def test_unknown_block_type(self):
        with pytest.raises(ValueError, match="Unsupported content block type"):
            message_from_param({"role": "user", "content": [{"type": "image"}]})


class TestCancellationToken:
    def test_callbacks_run_once(self):
        token = CancellationToken()
        calls: list[str] = []
        token.add_callback(lambda: calls.append("a"))
        token.cancel("stop")
        token.cancel("again")
        assert calls == ["a"]
        assert token.reason == "stop"

    def test_late_callback_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls: list[str] = []
        token.add_callback(lambda: calls.append("late"))
        assert calls == ["late"]

    def test_removed_callback_not_called(self):
        token = CancellationToken()
        calls: list[str] = []

        def callback() -> None:
            calls.append("x")

        token.add_callback(callback)
        token.remove_callback(callback)
        token.remove_callback(callback)
        token.cancel()
        assert calls == []

    def test_failing_callback_does_not_stop_others(self):
        token = CancellationToken()
        calls: list[str] = []

        def broken() -> None:
            raise RuntimeError("boom")

        token.add_callback(broken)
        token.add_callback(lambda: calls.append("ok"))
        token.cancel()
        assert calls == ["ok"]

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("user pressed escape")
        with pytest.raises(AbortError, match="user pressed escape"):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_wait(self):
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)
