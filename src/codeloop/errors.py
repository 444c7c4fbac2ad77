"""Exception hierarchy for codeloop.

Most failures inside a query are returned as data (error tool results, API
error messages). These exceptions cover the cases that cannot be expressed
that way: a missing shell, a closed session, invalid configuration.
"""

from __future__ import annotations


class CodeloopError(Exception):
    """Base class for all codeloop errors."""


class ConfigError(CodeloopError):
    """Raised when configuration files contain invalid values."""


class AbortError(CodeloopError):
    """Raised when an operation is attempted on a cancelled token."""


class ShellError(CodeloopError):
    """Base class for shell session errors."""


class ShellNotFoundError(ShellError):
    """No usable POSIX shell could be located on this host."""


class ShellClosedError(ShellError):
    """The shell session was closed and cannot accept commands."""
