"""Process runners that drain stdout and stderr concurrently.

- CaptureRunner / run / run_spec: buffer everything, return a ProcessResult
- BackgroundProcess: stream line events, write stdin, observe exit
"""

from __future__ import annotations

from procpipe.runners.background import BackgroundProcess, PollCallback
from procpipe.runners.capture import CaptureRunner, OutputBuffer, run, run_spec
from procpipe.runners.models import (
    NOT_STARTED,
    ExceptionEvent,
    ExitEvent,
    ProcessResult,
    ProcessSpec,
    ProcessState,
    StreamLine,
    StreamName,
)
from procpipe.runners.observers import Observers
from procpipe.runners.reader import StreamReader

__all__ = [
    # Models
    "NOT_STARTED",
    "ExceptionEvent",
    "ExitEvent",
    "ProcessResult",
    "ProcessSpec",
    "ProcessState",
    "StreamLine",
    "StreamName",
    # Building blocks
    "Observers",
    "OutputBuffer",
    "StreamReader",
    # Runners
    "BackgroundProcess",
    "CaptureRunner",
    "PollCallback",
    "run",
    "run_spec",
]
