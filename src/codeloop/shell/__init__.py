"""Persistent shell session."""

from codeloop.shell.detect import DetectedShell, detect_shell, to_shell_path
from codeloop.shell.session import ExecResult, ShellSession, ShellState

__all__ = [
    "DetectedShell",
    "ExecResult",
    "ShellSession",
    "ShellState",
    "detect_shell",
    "to_shell_path",
]
