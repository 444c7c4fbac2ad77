"""Tests for codeloop.core.loop — the query loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from codeloop.core.loop import QueryLoop, format_system_prompt, inject_reminders
from codeloop.core.reminders import ReminderService
from codeloop.permissions.gate import PermissionGate, PermissionResult
from codeloop.permissions.manager import PermissionManager
from codeloop.permissions.rules import PermissionDecision
from codeloop.types.config import QueryConfig
from codeloop.types.messages import (
    CANCEL_MESSAGE,
    INTERRUPT_MESSAGE,
    INTERRUPT_MESSAGE_FOR_TOOL_USE,
    REJECT_MESSAGE,
    AssistantMessage,
    ProgressMessage,
    TextBlock,
    ToolResultBlock,
    UserMessage,
    create_tool_result_message,
    create_user_message,
)
from tests.conftest import (
    MockModelClient,
    MockTurn,
    ScriptedConfirmationHandler,
    ScriptedTool,
    allow_all,
    make_ctx,
    tool_use,
)


async def _collect(loop: QueryLoop, ctx, prompt: str = "Hi", context=None, can_use_tool=allow_all):
    messages = []
    async for msg in loop.query([create_user_message(prompt)], ["sys"], context or {}, can_use_tool, ctx):
        messages.append(msg)
    return messages


def _result_ids(messages: list[Any]) -> list[str]:
    return [
        m.tool_result.tool_use_id
        for m in messages
        if isinstance(m, UserMessage) and m.tool_result is not None
    ]


class TestQueryLoop:
    @pytest.mark.asyncio
    async def test_simple_text_response(self):
        client = MockModelClient([MockTurn(text="Hello! I'm ready to help.")])
        messages = await _collect(QueryLoop(client), make_ctx())

        assert len(messages) == 1
        assert isinstance(messages[0], AssistantMessage)
        assert messages[0].text == "Hello! I'm ready to help."
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_tool_call_flow(self):
        tool = ScriptedTool("Lookup", result="found")
        client = MockModelClient([
            MockTurn(text="Looking.", tool_uses=[tool_use("tu1", "Lookup", value="a")]),
            MockTurn(text="All done."),
        ])
        messages = await _collect(QueryLoop(client), make_ctx([tool]))

        assert [type(m).__name__ for m in messages] == [
            "AssistantMessage", "UserMessage", "AssistantMessage",
        ]
        assert messages[1].tool_result.content == "found:a"
        assert messages[1].tool_use_result == {"value": "a"}
        assert messages[2].text == "All done."

        # Second model call sees the original prompt, the tool request and its result
        second = client.calls[1].messages
        assert len(second) == 3
        assert second[2].tool_result.tool_use_id == "tu1"

    @pytest.mark.asyncio
    async def test_progress_messages_are_yielded_but_not_sent_to_model(self):
        tool = ScriptedTool("Lookup", progress=["step 1", "step 2"])
        client = MockModelClient([
            MockTurn(tool_uses=[tool_use("tu1", "Lookup", value="a")]),
            MockTurn(text="ok"),
        ])
        messages = await _collect(QueryLoop(client), make_ctx([tool]))

        progress = [m for m in messages if isinstance(m, ProgressMessage)]
        assert [p.content.text for p in progress] == ["step 1", "step 2"]
        assert all(p.tool_use_id == "tu1" for p in progress)
        assert not any(isinstance(m, ProgressMessage) for m in client.calls[1].messages)

    @pytest.mark.asyncio
    async def test_read_only_batch_runs_concurrently(self):
        log: list[tuple[str, str, str]] = []
        a = ScriptedTool("A", delay=0.05, log=log)
        b = ScriptedTool("B", delay=0.05, log=log)
        client = MockModelClient([
            MockTurn(tool_uses=[tool_use("t1", "A", value="1"), tool_use("t2", "B", value="2")]),
        ])
        await _collect(QueryLoop(client), make_ctx([a, b]))

        # Both started before either finished
        assert [e[0] for e in log[:2]] == ["start", "start"]

    @pytest.mark.asyncio
    async def test_one_unsafe_tool_serializes_the_batch(self):
        log: list[tuple[str, str, str]] = []
        reader = ScriptedTool("Reader", delay=0.02, log=log)
        writer = ScriptedTool("Writer", read_only=False, log=log)
        client = MockModelClient([
            MockTurn(tool_uses=[
                tool_use("t1", "Reader", value="1"),
                tool_use("t2", "Writer", value="2"),
                tool_use("t3", "Reader", value="3"),
            ]),
        ])
        messages = await _collect(QueryLoop(client), make_ctx([reader, writer]))

        assert log == [
            ("start", "Reader", "1"), ("end", "Reader", "1"),
            ("start", "Writer", "2"), ("end", "Writer", "2"),
            ("start", "Reader", "3"), ("end", "Reader", "3"),
        ]
        assert _result_ids(messages) == ["t1", "t2", "t3"]

    @pytest.mark.asyncio
    async def test_execution_plan_recommendations_logged(self, caplog: pytest.LogCaptureFixture):
        client = MockModelClient([
            MockTurn(tool_uses=[tool_use("t1", "Missing")]),
            MockTurn(text="ok"),
        ])
        with caplog.at_level(logging.DEBUG, logger="codeloop.core.loop"):
            await _collect(QueryLoop(client), make_ctx())

        assert "Execution plan: Unknown tools will fail: Missing" in caplog.messages

    @pytest.mark.asyncio
    async def test_results_fed_back_in_request_order(self):
        slow = ScriptedTool("Slow", delay=0.05)
        fast = ScriptedTool("Fast")
        client = MockModelClient([
            MockTurn(tool_uses=[tool_use("t1", "Slow", value="s"), tool_use("t2", "Fast", value="f")]),
            MockTurn(text="done"),
        ])
        messages = await _collect(QueryLoop(client), make_ctx([slow, fast]))

        # Yielded as they finish...
        assert _result_ids(messages) == ["t2", "t1"]
        # ...but the model sees them in request order
        assert _result_ids(client.calls[1].messages) == ["t1", "t2"]

    @pytest.mark.asyncio
    async def test_permission_denied_becomes_error_result(self):
        tool = ScriptedTool("Writer", read_only=False)

        async def deny(tool, input, ctx, assistant_message=None):
            return PermissionResult(False, "Nope")

        client = MockModelClient([
            MockTurn(tool_uses=[tool_use("t1", "Writer", value="x")]),
            MockTurn(text="ok"),
        ])
        messages = await _collect(QueryLoop(client), make_ctx([tool]), can_use_tool=deny)

        result = messages[1].tool_result
        assert result.is_error
        assert result.content == "Nope"
        assert tool.calls == []

    @pytest.mark.asyncio
    async def test_api_error_ends_query(self):
        client = MockModelClient([MockTurn(raises=RuntimeError("boom"))])
        messages = await _collect(QueryLoop(client), make_ctx())

        assert len(messages) == 1
        assert messages[0].is_api_error
        assert messages[0].text == "API Error: boom"

    @pytest.mark.asyncio
    async def test_api_error_not_sent_back_to_model(self):
        client = MockModelClient([MockTurn(text="ok")])
        errored = AssistantMessage(content=(TextBlock("API Error: x"),), is_api_error=True)
        ctx = make_ctx()
        async for _ in QueryLoop(client).query(
            [create_user_message("a"), errored, create_user_message("b")], [], {}, allow_all, ctx,
        ):
            pass
        assert len(client.calls[0].messages) == 2

    @pytest.mark.asyncio
    async def test_cancel_during_model_call(self):
        client = MockModelClient([MockTurn(text="never seen", cancel=True)])
        messages = await _collect(QueryLoop(client), make_ctx())

        assert len(messages) == 1
        assert messages[0].text == INTERRUPT_MESSAGE

    @pytest.mark.asyncio
    async def test_hanging_model_call_unblocks_on_cancel(self):
        client = MockModelClient([MockTurn(hang=True)])
        ctx = make_ctx()
        task = asyncio.create_task(_collect(QueryLoop(client), ctx))
        await asyncio.sleep(0.01)
        ctx.cancel_token.cancel()
        messages = await asyncio.wait_for(task, timeout=2)

        assert [m.text for m in messages] == [INTERRUPT_MESSAGE]

    @pytest.mark.asyncio
    async def test_cancel_during_tools(self):
        first = ScriptedTool("First", read_only=False, on_call=lambda ctx: ctx.cancel_token.cancel())
        second = ScriptedTool("Second", read_only=False)
        client = MockModelClient([
            MockTurn(tool_uses=[tool_use("t1", "First", value="1"), tool_use("t2", "Second", value="2")]),
            MockTurn(text="never reached"),
        ])
        messages = await _collect(QueryLoop(client), make_ctx([first, second]))

        results = [m.tool_result for m in messages if isinstance(m, UserMessage) and m.tool_result]
        assert [r.tool_use_id for r in results] == ["t1", "t2"]
        assert all(r.content == CANCEL_MESSAGE and r.is_error for r in results)
        assert second.calls == []
        assert isinstance(messages[-1], AssistantMessage)
        assert messages[-1].text == INTERRUPT_MESSAGE_FOR_TOOL_USE
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_tool_result(self):
        client = MockModelClient([
            MockTurn(tool_uses=[tool_use("t1", "Missing")]),
            MockTurn(text="ok"),
        ])
        messages = await _collect(QueryLoop(client), make_ctx())

        assert messages[1].tool_result.is_error
        assert messages[1].tool_result.content == "Error: No such tool available: Missing"

    @pytest.mark.asyncio
    async def test_max_turns(self):
        tool = ScriptedTool("Lookup")
        client = MockModelClient([
            MockTurn(tool_uses=[tool_use("t1", "Lookup")]),
            MockTurn(tool_uses=[tool_use("t2", "Lookup")]),
        ])
        loop = QueryLoop(client, config=QueryConfig(max_turns=1))
        messages = await _collect(loop, make_ctx([tool]))

        assert len(client.calls) == 1
        assert isinstance(messages[-1], UserMessage)

    @pytest.mark.asyncio
    async def test_context_appended_to_system_prompt(self):
        client = MockModelClient([MockTurn(text="ok")])
        await _collect(QueryLoop(client), make_ctx(), context={"gitStatus": "clean"})

        prompt = client.calls[0].system_prompt
        assert prompt[0] == "sys"
        assert '<context name="gitStatus">clean</context>' in prompt[-1]

    @pytest.mark.asyncio
    async def test_reminders_injected_when_context_present(self):
        reminders = ReminderService()
        reminders.add_reminder("Remember the tests")
        client = MockModelClient([MockTurn(text="ok")])
        await _collect(QueryLoop(client, reminders=reminders), make_ctx(), context={"k": "v"})

        first = client.calls[0].messages[0]
        assert first.content.startswith("<system-reminder>\nRemember the tests")
        assert first.content.endswith("Hi")

    @pytest.mark.asyncio
    async def test_no_reminders_without_context(self):
        reminders = ReminderService()
        reminders.add_reminder("Remember the tests")
        client = MockModelClient([MockTurn(text="ok")])
        await _collect(QueryLoop(client, reminders=reminders), make_ctx())

        assert client.calls[0].messages[0].content == "Hi"


class TestFormatSystemPrompt:
    def test_no_context(self):
        assert format_system_prompt(["a", "b"], {}) == ["a", "b"]

    def test_context_entries(self):
        result = format_system_prompt(["a"], {"x": "1", "y": "2"})
        assert len(result) == 2
        assert '<context name="x">1</context>\n<context name="y">2</context>' in result[1]


class TestInjectReminders:
    def test_string_content_prefixed(self):
        out = inject_reminders([create_user_message("hello")], ["R"])
        assert out[0].content == "R\n\nhello"

    def test_block_content_gets_leading_text(self):
        msg = create_user_message([TextBlock("hello")])
        out = inject_reminders([msg], ["R"])
        assert out[0].content == (TextBlock("R"), TextBlock("hello"))
        assert out[0].uuid == msg.uuid

    def test_tool_results_stay_first(self):
        msg = create_tool_result_message("t1", "output")
        out = inject_reminders([msg], ["R"])
        assert isinstance(out[0].content[0], ToolResultBlock)
        assert out[0].content[1] == TextBlock("R")

    def test_targets_latest_user_message(self):
        messages = [
            create_user_message("first"),
            AssistantMessage(content=(TextBlock("reply"),)),
            create_user_message("second"),
        ]
        out = inject_reminders(messages, ["R"])
        assert out[0].content == "first"
        assert out[2].content == "R\n\nsecond"

    def test_no_reminders_returns_same_list(self):
        messages = [create_user_message("x")]
        assert inject_reminders(messages, []) is messages


class AlwaysAsk(PermissionManager):
    def check(self, tool, args=None):
        return PermissionDecision.ASK


class TestAbortCascade:
    @pytest.mark.asyncio
    async def test_abort_rejects_in_flight_siblings(self):
        first = ScriptedTool("First", concurrency_safe=True)
        second = ScriptedTool("Second", concurrency_safe=True)
        handler = ScriptedConfirmationHandler(["q", None])
        gate = PermissionGate(AlwaysAsk(), handler)
        client = MockModelClient([
            MockTurn(tool_uses=[tool_use("t1", "First", value="1"), tool_use("t2", "Second", value="2")]),
            MockTurn(text="never reached"),
        ])
        ctx = make_ctx([first, second])
        messages = await asyncio.wait_for(_collect(QueryLoop(client), ctx, can_use_tool=gate), timeout=5)

        results = [m.tool_result for m in messages if isinstance(m, UserMessage) and m.tool_result]
        assert [r.tool_use_id for r in results] == ["t1", "t2"]
        assert all(r.is_error and r.content in (REJECT_MESSAGE, CANCEL_MESSAGE) for r in results)
        assert first.calls == [] and second.calls == []
        assert ctx.cancel_token.cancelled
        assert isinstance(messages[-1], AssistantMessage)
        assert messages[-1].text == INTERRUPT_MESSAGE_FOR_TOOL_USE
        assert len(client.calls) == 1
