"""procpipe exception hierarchy.

All exceptions can be imported from this package:
    from procpipe.exceptions import ProcessStartError, InvalidUseError
"""

from __future__ import annotations

# Base exception
from procpipe.exceptions.base import ProcpipeError

# Configuration exceptions
from procpipe.exceptions.config import ConfigError

# Runner-related exceptions
from procpipe.exceptions.runner import (
    InvalidUseError,
    ProcessStartError,
    ProcessTimeoutError,
    RunnerError,
    StreamReadError,
)

__all__ = [
    # Base
    "ProcpipeError",
    # Config
    "ConfigError",
    # Runner
    "InvalidUseError",
    "ProcessStartError",
    "ProcessTimeoutError",
    "RunnerError",
    "StreamReadError",
]
