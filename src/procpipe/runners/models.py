"""Data models for the process runners.

This module defines immutable, frozen dataclasses for:
- Final capture results (ProcessResult)
- Per-line output events (StreamLine)
- Exit and failure notifications (ExitEvent, ExceptionEvent)
- Launch descriptions (ProcessSpec)

All models use frozen dataclasses with slots for memory efficiency and immutability.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

__all__ = [
    "NOT_STARTED",
    "ExceptionEvent",
    "ExitEvent",
    "ProcessResult",
    "ProcessSpec",
    "ProcessState",
    "StreamLine",
    "StreamName",
]

StreamName = Literal["stdout", "stderr"]

# Exit code reported when the process was never created.
NOT_STARTED: int = -(2**31)


class ProcessState(str, Enum):
    """Lifecycle of a background process handle."""

    CREATED = "created"
    RUNNING = "running"
    TERMINATED = "terminated"


@dataclass(frozen=True, slots=True)
class ProcessSpec:
    """Everything needed to launch a child process.

    Attributes:
        command: Executable path or name looked up on PATH.
        arguments: Single shell-style argument string. Quoting is the
            caller's responsibility.
        env: Environment overrides merged over the parent environment.
    """

    command: str
    arguments: str = ""
    env: Mapping[str, str] | None = None


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Terminal snapshot of a captured process.

    Attributes:
        exit_code: Exit code of the process, negative signal number when it
            was killed on POSIX, or NOT_STARTED when it never launched.
        stdout: Everything read from standard output.
        stderr: Everything read from standard error.
        combined: Both streams merged in arrival order.
        start_error: The failure that prevented launch, if any.
    """

    exit_code: int
    stdout: str
    stderr: str
    combined: str
    start_error: BaseException | None = None

    @classmethod
    def from_start_error(cls, error: BaseException) -> ProcessResult:
        """Build the result for a process that could not be launched."""
        message = str(error)
        return cls(
            exit_code=NOT_STARTED,
            stdout="",
            stderr=message,
            combined=message,
            start_error=error,
        )

    @property
    def started(self) -> bool:
        """True if the process was actually created."""
        return self.start_error is None and self.exit_code != NOT_STARTED

    @property
    def success(self) -> bool:
        """True if the process started and exited with code 0."""
        return self.started and self.exit_code == 0


@dataclass(frozen=True, slots=True)
class StreamLine:
    """A single line read from one of the child's output streams.

    Attributes:
        text: The line content without its terminator.
        stream: Which output stream this line came from.
        timestamp: Unix timestamp when the line was read.
    """

    text: str
    stream: StreamName
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class ExitEvent:
    """Emitted once when a background process has exited.

    Attributes:
        exit_code: Exit code reported by the operating system.
    """

    exit_code: int
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class ExceptionEvent:
    """Emitted when reading a stream or starting the process failed.

    Attributes:
        cause: The failure, normally a StreamReadError or ProcessStartError
            chained to the underlying exception.
        stream: The stream being read, or None for start failures.
    """

    cause: BaseException
    stream: StreamName | None = None
    timestamp: float = field(default_factory=time.time)
