from __future__ import annotations

from typing import Literal

from procpipe.exceptions.base import ProcpipeError


class RunnerError(ProcpipeError):
    """Base exception for runner failures.

    Attributes:
        message: Human-readable error message.
    """

    pass


class ProcessStartError(RunnerError):
    """The operating system refused to create the child process.

    Covers a missing executable, a permission problem, or arguments the OS
    rejected. The original ``OSError`` is available as ``__cause__``.

    Attributes:
        message: Human-readable error message.
        command: The executable that could not be started.
        arguments: The argument string passed with it.
    """

    def __init__(
        self,
        message: str,
        command: str | None = None,
        arguments: str | None = None,
    ) -> None:
        """Initialize the ProcessStartError.

        Args:
            message: Human-readable error message.
            command: The executable that could not be started.
            arguments: The argument string passed with it.
        """
        self.command = command
        self.arguments = arguments
        super().__init__(message)


class StreamReadError(RunnerError):
    """Reading a redirected output stream failed before end-of-stream.

    Attributes:
        message: Human-readable error message.
        stream: Which stream was being drained.
    """

    def __init__(
        self,
        message: str,
        stream: Literal["stdout", "stderr"] | None = None,
    ) -> None:
        """Initialize the StreamReadError.

        Args:
            message: Human-readable error message.
            stream: Which stream was being drained.
        """
        self.stream = stream
        super().__init__(message)


class InvalidUseError(RunnerError):
    """A runner was used out of lifecycle order.

    Raised for starting an instance twice, or waiting on / writing to an
    instance that was never started.
    """

    pass


class ProcessTimeoutError(RunnerError):
    """Waiting for a process exceeded the allowed time.

    Attributes:
        message: Human-readable error message.
        timeout_ms: The timeout that was exceeded, in milliseconds.
        command: The executable being waited on.
    """

    def __init__(
        self,
        message: str,
        timeout_ms: int | None = None,
        command: str | None = None,
    ) -> None:
        """Initialize the ProcessTimeoutError.

        Args:
            message: Human-readable error message.
            timeout_ms: The timeout value that was exceeded.
            command: The executable being waited on.
        """
        self.timeout_ms = timeout_ms
        self.command = command
        super().__init__(message)
