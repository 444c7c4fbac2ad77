"""A long-lived shell process driven through a file-based protocol.

Every command is wrapped in a small script sent to the shell's stdin::

    eval '<command>' < /dev/null > STDOUT 2> STDERR
    EXEC_EXIT_CODE=$?
    pwd > CWD
    echo $EXEC_EXIT_CODE > STATUS

and the session polls STATUS until it is non-empty. Shell state such as the
working directory and exported variables therefore survives between
commands, while output never mixes with the shell's own streams.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import secrets
import shlex
import tempfile
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import psutil

from codeloop.core.cancellation import CancellationToken
from codeloop.errors import ShellClosedError, ShellError
from codeloop.shell.detect import DetectedShell, detect_shell, to_shell_path
from codeloop.types.config import DEFAULT_TIMEOUT_MS

logger = logging.getLogger(__name__)

SIGTERM_CODE = 143
SYNTAX_ERROR_CODE = 128
SYNTAX_CHECK_TIMEOUT = 1.0
POLL_INTERVAL = 0.01
SETTLE_TIMEOUT = 2.0
TIMEOUT_NOTE = "Command execution timed out"


class ShellState(Enum):
    SPAWNING = "spawning"
    IDLE = "idle"
    EXECUTING = "executing"
    DEAD = "dead"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class ExecResult:
    """Outcome of one shell command."""

    stdout: str
    stderr: str
    code: int
    interrupted: bool = False


@dataclass(slots=True)
class _QueuedCommand:
    command: str
    cancel_token: CancellationToken | None
    timeout: float
    future: asyncio.Future[ExecResult]


class ShellSession:
    """One shell subprocess, one FIFO command queue.

    Usage::

        async with ShellSession(cwd) as shell:
            result = await shell.exec("cd src && ls")
            shell.pwd()  # .../src

    At most one command runs at a time; others wait in arrival order. If the
    shell exits (for example after ``exit 42``) the pending command resolves
    with the shell's exit status and the next command respawns a fresh shell
    in the last known directory.
    """

    def __init__(
        self,
        cwd: str | os.PathLike[str] | None = None,
        *,
        shell: DetectedShell | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        env: dict[str, str] | None = None,
        source_rc: bool = True,
    ) -> None:
        # Raises ShellNotFoundError before anything is spawned.
        self._shell = shell or detect_shell()
        self._cwd = str(Path(cwd or os.getcwd()).resolve())
        self._timeout = timeout_ms / 1000
        self._env = env
        self._source_rc = source_rc
        self._queue: deque[_QueuedCommand] = deque()
        self._proc: asyncio.subprocess.Process | None = None
        self._exit_waiter: asyncio.Task[None] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._exited = asyncio.Event()
        self._state = ShellState.DEAD
        self._interrupted = False
        self._new_files()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> ShellSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def state(self) -> ShellState:
        return self._state

    @property
    def is_alive(self) -> bool:
        return self._state in (ShellState.IDLE, ShellState.EXECUTING)

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    async def start(self) -> None:
        if self._state is ShellState.CLOSED:
            raise ShellClosedError("Shell session is closed")
        if self.is_alive:
            return
        await self._spawn()

    async def close(self) -> None:
        """Terminate the shell and fail every queued command."""
        if self._state is ShellState.CLOSED:
            return
        self._state = ShellState.CLOSED
        while self._queue:
            pending = self._queue.popleft()
            if not pending.future.done():
                pending.future.set_exception(ShellClosedError("Shell session is closed"))
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        if self._proc is not None and self._proc.returncode is None:
            self._kill_children()
            with contextlib.suppress(ProcessLookupError):
                self._proc.terminate()
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=SETTLE_TIMEOUT)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    self._proc.kill()
                await self._proc.wait()
        if self._exit_waiter is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._exit_waiter
        self._remove_files()

    def _new_files(self) -> None:
        self._id = secrets.token_hex(2)
        prefix = os.path.join(tempfile.gettempdir(), f"codeloop-{self._id}")
        self._status_file = f"{prefix}-status"
        self._stdout_file = f"{prefix}-stdout"
        self._stderr_file = f"{prefix}-stderr"
        self._cwd_file = f"{prefix}-cwd"

    @property
    def _files(self) -> tuple[str, ...]:
        return (self._status_file, self._stdout_file, self._stderr_file, self._cwd_file)

    def _remove_files(self) -> None:
        for path in self._files:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(path)

    async def _spawn(self) -> None:
        self._state = ShellState.SPAWNING
        self._remove_files()
        self._new_files()
        for path in self._files:
            Path(path).write_text("")
        Path(self._cwd_file).write_text(self._cwd)

        cwd = self._cwd if os.path.isdir(self._cwd) else os.getcwd()
        env = dict(os.environ if self._env is None else self._env)
        env["GIT_EDITOR"] = "true"
        self._proc = await asyncio.create_subprocess_exec(
            *self._shell.argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            cwd=cwd,
            env=env,
        )
        self._exited = asyncio.Event()
        self._exit_waiter = asyncio.create_task(self._wait_for_exit(self._proc))
        logger.info("Spawned shell %s (pid %d) in %s", self._shell.path, self._proc.pid, cwd)

        if self._source_rc and Path(self._shell.path).name == "bash":
            bashrc = Path.home() / ".bashrc"
            if bashrc.exists():
                await self._send(f"source {shlex.quote(str(bashrc))} > /dev/null 2>&1 || true")
        self._state = ShellState.IDLE

    async def _wait_for_exit(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        if proc is not self._proc:
            return
        if code and self._state is not ShellState.CLOSED:
            logger.error("Shell exited with code %d", code)
        self._exited.set()
        if self._state is not ShellState.CLOSED:
            self._state = ShellState.DEAD
        if not self._queue_busy():
            self._remove_files()

    def _queue_busy(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def _send(self, text: str) -> None:
        assert self._proc is not None and self._proc.stdin is not None
        self._proc.stdin.write((text + "\n").encode())
        await self._proc.stdin.drain()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def pwd(self) -> str:
        """Working directory as of the last completed command."""
        return self._cwd

    async def set_cwd(self, path: str | os.PathLike[str]) -> None:
        """Change the shell's directory. The path must exist."""
        resolved = Path(self._cwd, path).resolve()
        if not resolved.is_dir():
            raise ShellError(f"Path does not exist: {resolved}")
        result = await self.exec(f"cd {shlex.quote(to_shell_path(str(resolved), self._shell.kind))}")
        if result.code != 0:
            raise ShellError(result.stderr.strip() or f"cd failed with code {result.code}")

    async def exec(
        self,
        command: str,
        cancel_token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """Queue *command* and wait for its result.

        *timeout* is in seconds and defaults to the session timeout.
        """
        if self._state is ShellState.CLOSED:
            raise ShellClosedError("Shell session is closed")
        loop = asyncio.get_running_loop()
        queued = _QueuedCommand(
            command=command,
            cancel_token=cancel_token,
            timeout=timeout if timeout is not None else self._timeout,
            future=loop.create_future(),
        )
        self._queue.append(queued)
        if not self._queue_busy():
            self._worker = asyncio.create_task(self._process_queue())
        return await queued.future

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    async def _process_queue(self) -> None:
        while self._queue:
            queued = self._queue.popleft()
            if queued.future.done():
                continue
            try:
                result = await self._run(queued)
            except asyncio.CancelledError:
                if not queued.future.done():
                    queued.future.cancel()
                raise
            except Exception as exc:  # noqa: BLE001
                if not queued.future.done():
                    queued.future.set_exception(exc)
                continue
            if not queued.future.done():
                queued.future.set_result(result)
        if self._state is ShellState.DEAD:
            self._remove_files()

    async def _run(self, queued: _QueuedCommand) -> ExecResult:
        token = queued.cancel_token
        if token is not None and token.cancelled:
            return ExecResult(stdout="", stderr="", code=SIGTERM_CODE, interrupted=True)

        syntax_error = await self._check_syntax(queued.command)
        if syntax_error is not None:
            return ExecResult(stdout="", stderr=syntax_error, code=SYNTAX_ERROR_CODE)

        if not self.is_alive:
            logger.info("Respawning shell in %s", self._cwd)
            await self._spawn()

        self._state = ShellState.EXECUTING
        self._interrupted = False

        def interrupt() -> None:
            self._interrupted = True
            self._kill_children()

        def on_future_done(future: asyncio.Future[ExecResult]) -> None:
            if future.cancelled():
                interrupt()

        if token is not None:
            token.add_callback(interrupt)
        queued.future.add_done_callback(on_future_done)
        try:
            return await self._execute(queued.command, queued.timeout)
        finally:
            if token is not None:
                token.remove_callback(interrupt)
            queued.future.remove_done_callback(on_future_done)
            if self._state is ShellState.EXECUTING:
                self._state = ShellState.IDLE

    async def _check_syntax(self, command: str) -> str | None:
        """Parse *command* without running it. Returns stderr on failure."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._shell.syntax_check_argv, "-n", "-c", command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return str(exc)
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=SYNTAX_CHECK_TIMEOUT)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            return "Syntax check timed out"
        if proc.returncode != 0:
            return stderr.decode(errors="replace")
        return None

    async def _execute(self, command: str, timeout: float) -> ExecResult:
        for path in (self._status_file, self._stdout_file, self._stderr_file):
            Path(path).write_text("")

        def q(path: str) -> str:
            return shlex.quote(to_shell_path(path, self._shell.kind))

        script = "\n".join((
            f"eval {shlex.quote(command)} < /dev/null > {q(self._stdout_file)} 2> {q(self._stderr_file)}",
            "EXEC_EXIT_CODE=$?",
            f"pwd > {q(self._cwd_file)}",
            f"echo $EXEC_EXIT_CODE > {q(self._status_file)}",
        ))
        try:
            await self._send(script)
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Shell stdin closed before command could be sent")
            await self._exited.wait()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        timed_out = False
        while True:
            if self._status_size() > 0:
                return self._collect()
            if self._exited.is_set():
                return self._collect_after_exit()
            if self._interrupted:
                break
            if loop.time() > deadline:
                timed_out = True
                self._interrupted = True
                self._kill_children()
                break
            await asyncio.sleep(POLL_INTERVAL)

        await self._settle()
        stdout = self._read(self._stdout_file)
        stderr = self._read(self._stderr_file)
        if timed_out:
            stderr += ("\n" if stderr else "") + TIMEOUT_NOTE
            logger.warning("Shell command timed out after %.1fs", timeout)
        self._refresh_cwd()
        return ExecResult(stdout=stdout, stderr=stderr, code=SIGTERM_CODE, interrupted=True)

    async def _settle(self) -> None:
        """Wait for the interrupted script to finish writing its status.

        A command that runs inside the shell itself (a busy loop of builtins)
        has no child to kill, so the shell is terminated and respawned later.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + SETTLE_TIMEOUT
        while loop.time() < deadline:
            if self._status_size() > 0 or self._exited.is_set():
                return
            await asyncio.sleep(POLL_INTERVAL)
        if self._proc is not None and self._proc.returncode is None:
            logger.warning("Shell did not settle after interrupt, terminating it")
            with contextlib.suppress(ProcessLookupError):
                self._proc.kill()
            await self._exited.wait()

    def _kill_children(self) -> None:
        """SIGTERM every descendant of the shell, leaving the shell itself."""
        if self._proc is None or self._proc.returncode is not None:
            return
        try:
            children = psutil.Process(self._proc.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            return
        for child in children:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                child.terminate()

    # ------------------------------------------------------------------
    # File protocol
    # ------------------------------------------------------------------

    def _status_size(self) -> int:
        try:
            return os.path.getsize(self._status_file)
        except OSError:
            return 0

    @staticmethod
    def _read(path: str) -> str:
        try:
            return Path(path).read_text(errors="replace")
        except OSError:
            return ""

    def _refresh_cwd(self) -> None:
        new_cwd = self._read(self._cwd_file).strip()
        if new_cwd:
            self._cwd = new_cwd

    def _collect(self) -> ExecResult:
        status = self._read(self._status_file).strip()
        try:
            code = int(status)
        except ValueError:
            code = SIGTERM_CODE
        self._refresh_cwd()
        return ExecResult(
            stdout=self._read(self._stdout_file),
            stderr=self._read(self._stderr_file),
            code=code,
            interrupted=self._interrupted,
        )

    def _collect_after_exit(self) -> ExecResult:
        assert self._proc is not None
        result = ExecResult(
            stdout=self._read(self._stdout_file),
            stderr=self._read(self._stderr_file),
            code=self._proc.returncode if self._proc.returncode is not None else SIGTERM_CODE,
            interrupted=self._interrupted,
        )
        self._remove_files()
        return result

    def __repr__(self) -> str:
        return f"ShellSession(shell={self._shell.path!r}, cwd={self._cwd!r}, state={self._state.value})"
