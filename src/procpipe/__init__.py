"""procpipe: run child processes and capture stdout and stderr without deadlocks."""

from __future__ import annotations

from procpipe.exceptions import (
    ConfigError,
    InvalidUseError,
    ProcessStartError,
    ProcessTimeoutError,
    ProcpipeError,
    RunnerError,
    StreamReadError,
)
from procpipe.runners import (
    NOT_STARTED,
    BackgroundProcess,
    CaptureRunner,
    ExceptionEvent,
    ExitEvent,
    ProcessResult,
    ProcessSpec,
    ProcessState,
    StreamLine,
    run,
    run_spec,
)

__all__ = [
    "NOT_STARTED",
    "BackgroundProcess",
    "CaptureRunner",
    "ConfigError",
    "ExceptionEvent",
    "ExitEvent",
    "InvalidUseError",
    "ProcessResult",
    "ProcessSpec",
    "ProcessStartError",
    "ProcessState",
    "ProcessTimeoutError",
    "ProcpipeError",
    "RunnerError",
    "StreamLine",
    "StreamReadError",
    "run",
    "run_spec",
]

__version__ = "0.1.0"
