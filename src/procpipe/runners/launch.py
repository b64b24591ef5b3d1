"""Process launch policy shared by both runners.

Children always get redirected pipes, never a console window, and never a
shell. Only the environment and the argument string vary per launch.
"""

from __future__ import annotations

import os
import shlex
import subprocess
import sys
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from procpipe.config import DecodingConfig

__all__ = [
    "IS_WINDOWS",
    "build_command_line",
    "build_env",
    "build_popen_kwargs",
    "to_milliseconds",
]

IS_WINDOWS = sys.platform == "win32"


def build_command_line(command: str, arguments: str = "") -> str | list[str]:
    """Combine an executable and a shell-style argument string.

    Windows receives a single command line, which CreateProcess parses
    itself. POSIX receives an argv list split with shell quoting rules.
    """
    if IS_WINDOWS:
        head = subprocess.list2cmdline([command])
        return f"{head} {arguments}" if arguments else head
    return [command, *shlex.split(arguments)]


def build_env(overrides: Mapping[str, str] | None = None) -> dict[str, str] | None:
    """Merge environment overrides over the parent environment.

    Returns None when there is nothing to override so the child inherits
    the parent environment unchanged.
    """
    if not overrides:
        return None
    env = os.environ.copy()
    env.update(overrides)
    return env


def build_popen_kwargs(
    decoding: DecodingConfig,
    *,
    env: Mapping[str, str] | None = None,
    redirect_stdin: bool = False,
) -> dict[str, Any]:
    """Fixed Popen options for a captured child."""
    kwargs: dict[str, Any] = {
        "stdin": subprocess.PIPE if redirect_stdin else subprocess.DEVNULL,
        "stdout": subprocess.PIPE,
        "stderr": subprocess.PIPE,
        "shell": False,
        "text": True,
        "encoding": decoding.encoding,
        "errors": decoding.errors,
        "bufsize": 1,
        "env": build_env(env),
    }
    if IS_WINDOWS:
        kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
    return kwargs


def to_milliseconds(timeout: int | float | timedelta | None) -> int:
    """Normalize a timeout to whole milliseconds.

    None and non-positive values map to 0, meaning no limit.
    """
    if timeout is None:
        return 0
    if isinstance(timeout, timedelta):
        value = timeout.total_seconds() * 1000
    else:
        value = float(timeout)
    if value <= 0:
        return 0
    return max(1, int(value))
