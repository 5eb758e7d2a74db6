"""Error taxonomy for lish.

Every error raised while interpreting a line derives from ShellError and
carries the exit status the line should report. None of them end the session.
"""
from __future__ import annotations

from typing import Optional

# Exit statuses reported for interpreter-level failures
STATUS_IO_ERROR = 1
STATUS_SYNTAX_ERROR = 2
STATUS_NOT_EXECUTABLE = 126
STATUS_NOT_FOUND = 127


class ShellError(Exception):
    """Base class for errors that abort the current line only."""

    status: int = 1

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ShellSyntaxError(ShellError):
    """Malformed input: unterminated quote, dangling operator, ..."""

    status = STATUS_SYNTAX_ERROR

    def __str__(self) -> str:
        return f"syntax error: {self.message}"


class CommandNotFound(ShellError):
    status = STATUS_NOT_FOUND

    def __init__(self, name: str) -> None:
        super().__init__(f"{name}: command not found")
        self.name = name


class ShellIOError(ShellError):
    """A redirection target could not be opened."""

    status = STATUS_IO_ERROR

    def __init__(self, path: str, reason: Optional[str] = None) -> None:
        super().__init__(f"{path}: {reason or 'cannot open'}")
        self.path = path
        self.reason = reason

    @classmethod
    def from_os_error(cls, path: str, exc: OSError) -> "ShellIOError":
        return cls(path, exc.strerror or str(exc))
