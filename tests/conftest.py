"""Test fixtures including MockModelClient and scripted tools for deterministic testing."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from codeloop.core.cancellation import CancellationToken
from codeloop.errors import AbortError
from codeloop.permissions.approval import apply_answer
from codeloop.permissions.gate import ConfirmationRequest, PermissionResult
from codeloop.tools.base import BaseTool
from codeloop.types.messages import (
    AssistantMessage,
    TextBlock,
    ToolUseBlock,
    UserMessage,
)
from codeloop.types.tools import (
    ExecutionContext,
    QueryOptions,
    Tool,
    ToolDef,
    ToolEvent,
    ToolOutput,
    ToolParam,
    ToolProgress,
)


@dataclass
class MockTurn:
    """A scripted turn for MockModelClient.

    Specify text and/or tool_uses for what the model should "respond" with.
    ``raises`` makes the call fail, ``cancel`` cancels the query's token
    during the call, ``hang`` blocks until the token is cancelled.
    """

    text: str = ""
    tool_uses: list[dict[str, Any]] = field(default_factory=list)
    # Each tool_use: {"id": "tu1", "name": "Read", "args": {"file_path": "foo.py"}}
    raises: Exception | None = None
    cancel: bool = False
    hang: bool = False


@dataclass
class ModelCall:
    messages: list[UserMessage | AssistantMessage]
    system_prompt: list[str]
    tools: list[str]


class MockModelClient:
    """A deterministic model client for testing.

    Usage:
        client = MockModelClient(turns=[
            MockTurn(tool_uses=[{"id": "tu1", "name": "Read", "args": {"file_path": "a.py"}}]),
            MockTurn(text="The file contains test code."),
        ])
    """

    def __init__(self, turns: list[MockTurn], model: str = "mock-model"):
        self._turns = list(turns)
        self._turn_index = 0
        self._model = model
        self.calls: list[ModelCall] = []

    @property
    def model_id(self) -> str:
        return self._model

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
        self.calls.append(ModelCall(list(messages), list(system_prompt), [t.name for t in tools]))
        if self._turn_index >= len(self._turns):
            return AssistantMessage(content=(TextBlock("Done."),))

        turn = self._turns[self._turn_index]
        self._turn_index += 1

        if turn.hang:
            await cancel_token.wait()
            raise AbortError("Request cancelled")
        if turn.raises is not None:
            raise turn.raises
        if turn.cancel:
            cancel_token.cancel()

        content: list[Any] = []
        if turn.text:
            content.append(TextBlock(turn.text))
        for tu in turn.tool_uses:
            content.append(ToolUseBlock(tu["id"], tu["name"], dict(tu.get("args", {}))))
        return AssistantMessage(content=tuple(content))


class ScriptedTool(BaseTool):
    """A tool whose behavior is fixed at construction.

    Every call is appended to ``log`` as ``("start", name, id)`` and
    ``("end", name, id)`` so tests can check ordering and overlap.
    """

    def __init__(
        self,
        name: str,
        *,
        read_only: bool = True,
        concurrency_safe: bool | None = None,
        needs_permission: bool | None = None,
        result: str = "ok",
        progress: Sequence[str] = (),
        delay: float = 0.0,
        raises: Exception | None = None,
        wait_for_cancel: bool = False,
        on_call: Callable[[ExecutionContext], None] | None = None,
        log: list[tuple[str, str, str]] | None = None,
    ) -> None:
        self._name = name
        self.read_only = read_only
        self._concurrency_safe = read_only if concurrency_safe is None else concurrency_safe
        self._needs_permission = needs_permission
        self._result = result
        self._progress = tuple(progress)
        self._delay = delay
        self._raises = raises
        self._wait_for_cancel = wait_for_cancel
        self._on_call = on_call
        self.log = log if log is not None else []
        self.calls: list[dict[str, Any]] = []

    @property
    def definition(self) -> ToolDef:
        return ToolDef(
            name=self._name,
            description=f"Scripted tool {self._name}",
            parameters=(ToolParam("value", "string", "Any value", required=False),),
        )

    def is_concurrency_safe(self) -> bool:
        return self._concurrency_safe

    def needs_permissions(self, input: dict[str, Any]) -> bool:
        if self._needs_permission is None:
            return super().needs_permissions(input)
        return self._needs_permission

    async def execute(self, args: dict[str, Any], ctx: ExecutionContext) -> ToolOutput:
        raise NotImplementedError  # call() is overridden

    async def call(self, input: dict[str, Any], ctx: ExecutionContext) -> AsyncIterator[ToolEvent]:
        marker = input.get("value", "")
        self.calls.append(input)
        self.log.append(("start", self._name, marker))
        if self._on_call is not None:
            self._on_call(ctx)
        for text in self._progress:
            yield ToolProgress(text)
        if self._wait_for_cancel:
            await ctx.cancel_token.wait()
        if self._delay:
            await asyncio.sleep(self._delay)
        self.log.append(("end", self._name, marker))
        if self._raises is not None:
            raise self._raises
        yield ToolOutput(data={"value": marker}, result_for_assistant=f"{self._result}:{marker}")


class ScriptedConfirmationHandler:
    """Answers confirmation prompts from a script of typed answers.

    ``None`` in the script means "never answer" (the prompt stays open).
    """

    def __init__(self, answers: Sequence[str | None] = ()) -> None:
        self._answers = list(answers)
        self.requests: list[ConfirmationRequest] = []
        self.opened = asyncio.Event()

    async def request_confirmation(self, request: ConfirmationRequest) -> None:
        self.requests.append(request)
        self.opened.set()
        answer = self._answers.pop(0) if self._answers else "n"
        if answer is None:
            await asyncio.Event().wait()
        apply_answer(request, answer)


async def allow_all(
    tool: Tool,
    input: dict[str, Any],
    ctx: ExecutionContext,
    assistant_message: AssistantMessage | None = None,
) -> PermissionResult:
    return PermissionResult(True)


def make_ctx(
    tools: Sequence[Tool] = (),
    cwd: Path | None = None,
    token: CancellationToken | None = None,
    **kwargs: Any,
) -> ExecutionContext:
    return ExecutionContext(
        cancel_token=token or CancellationToken(),
        tools=list(tools),
        cwd=cwd or Path.cwd(),
        options=kwargs.pop("options", QueryOptions()),
        **kwargs,
    )


def tool_use(id: str, name: str, **args: Any) -> dict[str, Any]:
    return {"id": id, "name": name, "args": args}


@pytest.fixture
def tmp_project(tmp_path: Path) -> Path:
    """Create a temporary project directory with sample files."""
    (tmp_path / "README.md").write_text("# Test Project\n\nA test project.\n")
    (tmp_path / "main.py").write_text("def hello():\n    print('Hello, world!')\n\nhello()\n")
    src = tmp_path / "src"
    src.mkdir()
    (src / "utils.py").write_text("def add(a, b):\n    return a + b\n")
    (src / "app.py").write_text("from utils import add\n\nresult = add(1, 2)\nprint(result)\n")
    return tmp_path


@pytest.fixture
def sessions_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect transcript files into the test's temp directory."""
    d = tmp_path / "sessions"
    d.mkdir()
    monkeypatch.setattr("codeloop.core.session._sessions_dir", lambda: d)
    return d
