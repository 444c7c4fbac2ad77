"""The permission gate between a requested tool call and its execution.

The gate first consults the standing-grant store. When that answers ASK it
builds a ConfirmationRequest and hands it to a ConfirmationHandler (a terminal
prompt, a UI, a test script). Exactly one of the request's callbacks takes
effect, exactly once; cancelling the query while the prompt is open resolves
it as denied instead of leaving the loop waiting.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Protocol, runtime_checkable

from codeloop.permissions.commands import get_command_prefix
from codeloop.permissions.manager import PermissionManager
from codeloop.permissions.rules import PermissionDecision
from codeloop.types.messages import REJECT_MESSAGE, AssistantMessage
from codeloop.types.tools import ExecutionContext, Tool

logger = logging.getLogger(__name__)

AllowScope = Literal["permanent", "temporary"]


@dataclass(frozen=True, slots=True)
class PermissionResult:
    """Whether a tool call may proceed, and the message to record if not."""

    allowed: bool
    message: str = ""


@runtime_checkable
class CanUseTool(Protocol):
    """The decision function the execution controller consults."""

    async def __call__(
        self,
        tool: Tool,
        input: dict[str, Any],
        ctx: ExecutionContext,
        assistant_message: AssistantMessage | None,
    ) -> PermissionResult:
        ...


class _Outcome(Enum):
    ALLOW_PERMANENT = "allow_permanent"
    ALLOW_TEMPORARY = "allow_temporary"
    REJECT = "reject"
    ABORT = "abort"
    CANCELLED = "cancelled"


class ConfirmationRequest:
    """A pending question to the user about one tool call.

    Call exactly one of ``on_allow``, ``on_reject`` or ``on_abort``. Later
    calls are ignored.
    """

    def __init__(
        self,
        tool: Tool,
        description: str,
        input: dict[str, Any],
        command_prefix: str | None,
        assistant_message: AssistantMessage | None,
        future: asyncio.Future[_Outcome],
    ) -> None:
        self.tool = tool
        self.description = description
        self.input = input
        self.command_prefix = command_prefix
        self.assistant_message = assistant_message
        self._future = future

    @property
    def resolved(self) -> bool:
        return self._future.done()

    def _resolve(self, outcome: _Outcome) -> bool:
        if self._future.done():
            return False
        self._future.set_result(outcome)
        return True

    def on_allow(self, scope: AllowScope = "temporary") -> None:
        if scope == "permanent":
            self._resolve(_Outcome.ALLOW_PERMANENT)
        else:
            self._resolve(_Outcome.ALLOW_TEMPORARY)

    def on_reject(self) -> None:
        self._resolve(_Outcome.REJECT)

    def on_abort(self) -> None:
        self._resolve(_Outcome.ABORT)

    def __repr__(self) -> str:
        return f"ConfirmationRequest(tool={self.tool.name!r}, description={self.description!r})"


@runtime_checkable
class ConfirmationHandler(Protocol):
    """Presents a ConfirmationRequest to the user.

    The handler may resolve the request before returning or later from a UI
    callback. It is cancelled if the request is resolved some other way.
    """

    async def request_confirmation(self, request: ConfirmationRequest) -> None:
        ...


class PermissionGate:
    """Cancellable per-invocation permission decision.

    Instances are callables matching ``CanUseTool``.
    """

    def __init__(
        self,
        manager: PermissionManager | None = None,
        handler: ConfirmationHandler | None = None,
    ) -> None:
        self._manager = manager or PermissionManager()
        self._handler = handler

    @property
    def manager(self) -> PermissionManager:
        return self._manager

    async def __call__(
        self,
        tool: Tool,
        input: dict[str, Any],
        ctx: ExecutionContext,
        assistant_message: AssistantMessage | None = None,
    ) -> PermissionResult:
        return await self.decide(tool, input, ctx, assistant_message)

    async def decide(
        self,
        tool: Tool,
        input: dict[str, Any],
        ctx: ExecutionContext,
        assistant_message: AssistantMessage | None = None,
    ) -> PermissionResult:
        token = ctx.cancel_token
        if token.cancelled:
            # Re-signal so sibling invocations observe the abort too.
            token.cancel()
            return PermissionResult(False, REJECT_MESSAGE)

        decision = self._manager.check(tool, input)
        if decision is PermissionDecision.ALLOW:
            return PermissionResult(True)
        if decision is PermissionDecision.DENY:
            return PermissionResult(False, f"Permission to use {tool.name} has been denied.")
        if self._handler is None:
            return PermissionResult(
                False,
                f"{tool.name} requires permission but no confirmation handler is configured.",
            )

        outcome = await self._ask(tool, input, ctx, assistant_message)
        logger.debug("Permission for %s resolved as %s", tool.name, outcome.value)

        match outcome:
            case _Outcome.ALLOW_PERMANENT if ctx.options.safe_mode:
                # Safe mode never records standing grants
                return PermissionResult(True)
            case _Outcome.ALLOW_PERMANENT:
                self._manager.grant(tool, input, self._command_prefix(input))
                return PermissionResult(True)
            case _Outcome.ALLOW_TEMPORARY:
                return PermissionResult(True)
            case _Outcome.ABORT:
                token.cancel("Permission prompt aborted")
                return PermissionResult(False, REJECT_MESSAGE)
            case _:
                return PermissionResult(False, REJECT_MESSAGE)

    @staticmethod
    def _command_prefix(input: dict[str, Any]) -> str | None:
        command = input.get("command")
        return get_command_prefix(command) if isinstance(command, str) else None

    async def _ask(
        self,
        tool: Tool,
        input: dict[str, Any],
        ctx: ExecutionContext,
        assistant_message: AssistantMessage | None,
    ) -> _Outcome:
        assert self._handler is not None
        future: asyncio.Future[_Outcome] = asyncio.get_running_loop().create_future()
        request = ConfirmationRequest(
            tool=tool,
            description=tool.describe(input),
            input=input,
            command_prefix=self._command_prefix(input),
            assistant_message=assistant_message,
            future=future,
        )

        def on_cancel() -> None:
            request._resolve(_Outcome.CANCELLED)

        ctx.cancel_token.add_callback(on_cancel)
        handler_task = asyncio.create_task(self._run_handler(request))
        try:
            return await future
        finally:
            ctx.cancel_token.remove_callback(on_cancel)
            if not handler_task.done():
                handler_task.cancel()

    async def _run_handler(self, request: ConfirmationRequest) -> None:
        assert self._handler is not None
        try:
            await self._handler.request_confirmation(request)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.warning("Confirmation handler failed, rejecting", exc_info=True)
            request.on_reject()
