"""Locate a POSIX-compatible shell for the persistent session."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath

from codeloop.errors import ShellNotFoundError

logger = logging.getLogger(__name__)

POSIX_SHELLS = frozenset({"bash", "zsh", "sh", "dash", "ksh"})

INSTALL_HINT = """\
No suitable shell found. codeloop needs a POSIX shell (bash) to run commands.
On Windows, install one of:
  - Git for Windows: https://git-scm.com/download/win
  - MSYS2: https://www.msys2.org/
  - WSL: run `wsl --install` in an administrator PowerShell
Or point CODELOOP_BASH at a bash.exe."""


@dataclass(frozen=True, slots=True)
class DetectedShell:
    """A shell binary plus how to launch it."""

    path: str
    args: tuple[str, ...] = ("-l",)
    kind: str = "posix"  # "posix", "msys" or "wsl"

    @property
    def argv(self) -> list[str]:
        return [self.path, *self.args]

    @property
    def syntax_check_argv(self) -> list[str]:
        """Prefix for `-n -c <cmd>` parse-only invocations."""
        if self.kind == "wsl":
            return [self.path, "-e", "bash"]
        return [self.path]


def _run_ok(argv: list[str]) -> bool:
    try:
        proc = subprocess.run(argv, capture_output=True, timeout=5, check=False)
    except (OSError, subprocess.TimeoutExpired):
        return False
    return proc.returncode == 0


@dataclass(slots=True)
class HostSystem:
    """Filesystem and process lookups, swappable in tests."""

    exists: Callable[[str], bool] = os.path.exists
    which: Callable[[str], str | None] = shutil.which
    run_ok: Callable[[list[str]], bool] = _run_ok


# ------------------------------------------------------------------
# Detection
# ------------------------------------------------------------------


def detect_shell(
    platform: str | None = None,
    env: Mapping[str, str] | None = None,
    host: HostSystem | None = None,
) -> DetectedShell:
    """Resolve the shell to launch on this host.

    Raises ShellNotFoundError with install instructions when nothing usable
    exists.
    """
    platform = platform or sys.platform
    env = os.environ if env is None else env
    host = host or HostSystem()

    if platform != "win32":
        return _detect_posix(env, host)
    return _detect_windows(env, host)


def _detect_posix(env: Mapping[str, str], host: HostSystem) -> DetectedShell:
    configured = env.get("SHELL", "")
    if configured and Path(configured).name in POSIX_SHELLS and host.exists(configured):
        return DetectedShell(configured)
    for candidate in ("/bin/bash", "/bin/sh"):
        if host.exists(candidate):
            if configured:
                logger.debug("Ignoring non-POSIX SHELL=%s, using %s", configured, candidate)
            return DetectedShell(candidate)
    raise ShellNotFoundError(INSTALL_HINT)


def _windows_candidates(env: Mapping[str, str]) -> list[str]:
    candidates: list[str] = []
    for var in ("ProgramFiles", "ProgramFiles(x86)"):
        root = env.get(var)
        if root:
            candidates.append(str(PureWindowsPath(root, "Git", "bin", "bash.exe")))
            candidates.append(str(PureWindowsPath(root, "Git", "usr", "bin", "bash.exe")))
    local = env.get("LocalAppData")
    if local:
        candidates.append(str(PureWindowsPath(local, "Programs", "Git", "bin", "bash.exe")))
    candidates.append(r"C:\msys64\usr\bin\bash.exe")
    return candidates


def _detect_windows(env: Mapping[str, str], host: HostSystem) -> DetectedShell:
    configured = env.get("SHELL", "")
    if configured.lower().endswith("bash.exe") and host.exists(configured):
        return DetectedShell(configured, kind="msys")

    override = env.get("CODELOOP_BASH")
    if override and host.exists(override):
        return DetectedShell(override, kind="msys")

    for candidate in _windows_candidates(env):
        if host.exists(candidate):
            return DetectedShell(candidate, kind="msys")

    on_path = host.which("bash.exe") or host.which("bash")
    if on_path and "system32" not in on_path.lower():
        return DetectedShell(on_path, kind="msys")

    wsl = host.which("wsl.exe") or host.which("wsl")
    if wsl and host.run_ok([wsl, "-e", "bash", "-lc", "echo ok"]):
        return DetectedShell(wsl, args=("-e", "bash", "-l"), kind="wsl")

    raise ShellNotFoundError(INSTALL_HINT)


# ------------------------------------------------------------------
# Path translation
# ------------------------------------------------------------------

_DRIVE_RE = re.compile(r"^([A-Za-z]):[\\/]?(.*)$")


def to_shell_path(path: str, kind: str = "posix") -> str:
    """Translate a host path into the form the shell understands.

    ``C:\\Users\\me`` becomes ``/c/Users/me`` under MSYS and
    ``/mnt/c/Users/me`` under WSL. POSIX paths pass through unchanged.
    """
    if kind == "posix":
        return path
    match = _DRIVE_RE.match(path)
    if not match:
        return path.replace("\\", "/")
    drive, rest = match.group(1).lower(), match.group(2).replace("\\", "/")
    prefix = f"/mnt/{drive}" if kind == "wsl" else f"/{drive}"
    return f"{prefix}/{rest}" if rest else prefix
