"""Tests for codeloop.shell — detection and the persistent shell session."""

from __future__ import annotations

import asyncio
import shutil
import sys
from pathlib import Path, PureWindowsPath

import pytest

from codeloop.core.cancellation import CancellationToken
from codeloop.errors import ShellClosedError, ShellError, ShellNotFoundError
from codeloop.shell.detect import DetectedShell, HostSystem, detect_shell, to_shell_path
from codeloop.shell.session import (
    SIGTERM_CODE,
    SYNTAX_ERROR_CODE,
    TIMEOUT_NOTE,
    ExecResult,
    ShellSession,
    ShellState,
)


def _host(existing: set[str], which: dict[str, str] | None = None, run_ok: bool = False) -> HostSystem:
    which = which or {}
    return HostSystem(
        exists=lambda p: p in existing,
        which=lambda name: which.get(name),
        run_ok=lambda argv: run_ok,
    )


class TestDetectShell:
    def test_posix_uses_shell_env(self):
        shell = detect_shell("linux", {"SHELL": "/bin/zsh"}, _host({"/bin/zsh", "/bin/bash"}))
        assert shell == DetectedShell("/bin/zsh")
        assert shell.argv == ["/bin/zsh", "-l"]

    def test_posix_ignores_non_posix_shell(self):
        shell = detect_shell("darwin", {"SHELL": "/usr/bin/fish"}, _host({"/usr/bin/fish", "/bin/bash"}))
        assert shell.path == "/bin/bash"

    def test_posix_falls_back_to_sh(self):
        shell = detect_shell("linux", {}, _host({"/bin/sh"}))
        assert shell.path == "/bin/sh"

    def test_posix_nothing_found(self):
        with pytest.raises(ShellNotFoundError):
            detect_shell("linux", {}, _host(set()))

    def test_windows_git_bash(self):
        expected = str(PureWindowsPath(r"C:\Program Files", "Git", "bin", "bash.exe"))
        shell = detect_shell("win32", {"ProgramFiles": r"C:\Program Files"}, _host({expected}))
        assert shell.path == expected
        assert shell.kind == "msys"

    def test_windows_override(self):
        shell = detect_shell("win32", {"CODELOOP_BASH": r"D:\tools\bash.exe"}, _host({r"D:\tools\bash.exe"}))
        assert shell.path == r"D:\tools\bash.exe"

    def test_windows_skips_system32_bash_and_uses_wsl(self):
        host = _host(
            set(),
            which={"bash.exe": r"C:\Windows\System32\bash.exe", "wsl.exe": r"C:\Windows\System32\wsl.exe"},
            run_ok=True,
        )
        shell = detect_shell("win32", {}, host)
        assert shell.kind == "wsl"
        assert shell.argv == [r"C:\Windows\System32\wsl.exe", "-e", "bash", "-l"]
        assert shell.syntax_check_argv == [r"C:\Windows\System32\wsl.exe", "-e", "bash"]

    def test_windows_nothing_found(self):
        with pytest.raises(ShellNotFoundError, match="Git for Windows"):
            detect_shell("win32", {}, _host(set(), which={"wsl.exe": "wsl.exe"}, run_ok=False))


class TestToShellPath:
    def test_posix_passthrough(self):
        assert to_shell_path("/home/me/project") == "/home/me/project"

    def test_msys(self):
        assert to_shell_path(r"C:\Users\me\project", "msys") == "/c/Users/me/project"

    def test_wsl(self):
        assert to_shell_path(r"D:\work", "wsl") == "/mnt/d/work"

    def test_bare_drive(self):
        assert to_shell_path("C:", "msys") == "/c"


needs_posix = pytest.mark.skipif(
    sys.platform == "win32" or shutil.which("bash") is None,
    reason="requires a POSIX bash",
)


@pytest.fixture
def bash() -> DetectedShell:
    return DetectedShell(shutil.which("bash") or "/bin/bash", args=())


@needs_posix
class TestShellSession:
    @pytest.mark.asyncio
    async def test_simple_command(self, tmp_path: Path, bash):
        async with ShellSession(tmp_path, shell=bash, source_rc=False) as shell:
            result = await shell.exec("echo hello")
            assert result.stdout == "hello\n"
            assert result.stderr == ""
            assert result.code == 0
            assert not result.interrupted

    @pytest.mark.asyncio
    async def test_stderr_and_exit_code(self, tmp_path: Path, bash):
        async with ShellSession(tmp_path, shell=bash, source_rc=False) as shell:
            result = await shell.exec("echo oops 1>&2; false")
            assert result.stderr == "oops\n"
            assert result.code == 1

    @pytest.mark.asyncio
    async def test_cwd_persists(self, tmp_path: Path, bash):
        (tmp_path / "sub").mkdir()
        async with ShellSession(tmp_path, shell=bash, source_rc=False) as shell:
            await shell.exec("cd sub")
            assert shell.pwd() == str((tmp_path / "sub").resolve())
            result = await shell.exec("pwd")
            assert result.stdout.strip() == shell.pwd()

    @pytest.mark.asyncio
    async def test_env_persists(self, tmp_path: Path, bash):
        async with ShellSession(tmp_path, shell=bash, source_rc=False) as shell:
            await shell.exec("export CODELOOP_TEST_VAR=kept")
            result = await shell.exec("echo $CODELOOP_TEST_VAR")
            assert result.stdout == "kept\n"

    @pytest.mark.asyncio
    async def test_set_cwd(self, tmp_path: Path, bash):
        (tmp_path / "a").mkdir()
        async with ShellSession(tmp_path, shell=bash, source_rc=False) as shell:
            await shell.set_cwd("a")
            assert shell.pwd() == str((tmp_path / "a").resolve())
            with pytest.raises(ShellError):
                await shell.set_cwd("missing")

    @pytest.mark.asyncio
    async def test_syntax_error_leaves_cwd(self, tmp_path: Path, bash):
        async with ShellSession(tmp_path, shell=bash, source_rc=False) as shell:
            before = shell.pwd()
            result = await shell.exec("cd / && if then fi (")
            assert result.code == SYNTAX_ERROR_CODE
            assert result.stderr
            assert shell.pwd() == before

    @pytest.mark.asyncio
    async def test_timeout_then_next_command(self, tmp_path: Path, bash):
        async with ShellSession(tmp_path, shell=bash, source_rc=False) as shell:
            result = await shell.exec("sleep 10", timeout=0.3)
            assert result.code == SIGTERM_CODE
            assert result.interrupted
            assert TIMEOUT_NOTE in result.stderr

            after = await shell.exec("echo still here")
            assert after.stdout == "still here\n"
            assert after.code == 0

    @pytest.mark.asyncio
    async def test_shell_exit_respawns(self, tmp_path: Path, bash):
        (tmp_path / "sub").mkdir()
        async with ShellSession(tmp_path, shell=bash, source_rc=False) as shell:
            await shell.exec("cd sub")
            result = await shell.exec("exit 42")
            assert result.code == 42
            assert result.stdout == ""
            assert not result.interrupted

            again = await shell.exec("pwd")
            assert again.code == 0
            assert again.stdout.strip() == str((tmp_path / "sub").resolve())

    @pytest.mark.asyncio
    async def test_fifo_order(self, tmp_path: Path, bash):
        async with ShellSession(tmp_path, shell=bash, source_rc=False) as shell:
            results = await asyncio.gather(*(
                shell.exec(f"sleep 0.0{3 - i}; echo {i} >> order.log; echo {i}") for i in range(3)
            ))
            assert [r.stdout for r in results] == ["0\n", "1\n", "2\n"]
            assert (tmp_path / "order.log").read_text() == "0\n1\n2\n"

    @pytest.mark.asyncio
    async def test_cancel_running_command(self, tmp_path: Path, bash):
        token = CancellationToken()
        async with ShellSession(tmp_path, shell=bash, source_rc=False) as shell:
            task = asyncio.create_task(shell.exec("sleep 10", token))
            await asyncio.sleep(0.3)
            token.cancel()
            result = await asyncio.wait_for(task, timeout=5)
            assert result.interrupted
            assert result.code == SIGTERM_CODE

            assert (await shell.exec("echo ok")).stdout == "ok\n"

    @pytest.mark.asyncio
    async def test_pre_cancelled_token(self, tmp_path: Path, bash):
        token = CancellationToken()
        token.cancel()
        async with ShellSession(tmp_path, shell=bash, source_rc=False) as shell:
            (tmp_path / "marker").unlink(missing_ok=True)
            result = await shell.exec("touch marker", token)
            assert result == ExecResult("", "", SIGTERM_CODE, True)
            assert not (tmp_path / "marker").exists()

    @pytest.mark.asyncio
    async def test_closed_session_rejects_commands(self, tmp_path: Path, bash):
        shell = ShellSession(tmp_path, shell=bash, source_rc=False)
        await shell.start()
        assert shell.is_alive
        await shell.close()
        assert shell.state is ShellState.CLOSED
        with pytest.raises(ShellClosedError):
            await shell.exec("echo nope")

    @pytest.mark.asyncio
    async def test_lazy_start(self, tmp_path: Path, bash):
        shell = ShellSession(tmp_path, shell=bash, source_rc=False)
        assert shell.state is ShellState.DEAD
        try:
            assert (await shell.exec("echo lazy")).stdout == "lazy\n"
            assert shell.pid is not None
        finally:
            await shell.close()
