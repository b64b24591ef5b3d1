"""Synchronous capture runner.

CaptureRunner starts a child with both output streams redirected, drains
them on two StreamReader threads into an OutputBuffer, and lets the caller
block until the process has exited and both streams are fully drained.
The module-level ``run`` functions wrap the whole lifecycle and never
raise: every failure comes back as a ProcessResult.
"""

from __future__ import annotations

import subprocess
import threading
from collections.abc import Mapping
from datetime import timedelta
from types import TracebackType
from typing import IO, Self

from tenacity import Retrying, retry_if_result, wait_none

from procpipe.config import ProcpipeConfig, get_config
from procpipe.exceptions import InvalidUseError, ProcessStartError
from procpipe.logging import get_logger
from procpipe.runners.launch import (
    build_command_line,
    build_popen_kwargs,
    to_milliseconds,
)
from procpipe.runners.models import ProcessResult, ProcessSpec, StreamName
from procpipe.runners.reader import StreamReader

__all__ = ["CaptureRunner", "OutputBuffer", "run", "run_spec"]

logger = get_logger(__name__)

Timeout = int | float | timedelta | None


class OutputBuffer:
    """Three text accumulators: stdout, stderr and their arrival-order merge.

    Each accumulator has its own lock for reads. Appends take the combined
    lock first and the stream lock inside it, so a line reaches ``combined``
    and its own stream atomically and the merge order matches arrival order.
    """

    def __init__(self) -> None:
        self._combined_lock = threading.Lock()
        self._stream_locks: dict[StreamName, threading.Lock] = {
            "stdout": threading.Lock(),
            "stderr": threading.Lock(),
        }
        self._combined: list[str] = []
        self._streams: dict[StreamName, list[str]] = {"stdout": [], "stderr": []}

    def append(self, stream: StreamName, line: str) -> None:
        entry = f"{line}\n"
        with self._combined_lock:
            self._combined.append(entry)
            with self._stream_locks[stream]:
                self._streams[stream].append(entry)

    def text(self, stream: StreamName) -> str:
        with self._stream_locks[stream]:
            return "".join(self._streams[stream])

    @property
    def stdout(self) -> str:
        return self.text("stdout")

    @property
    def stderr(self) -> str:
        return self.text("stderr")

    @property
    def combined(self) -> str:
        with self._combined_lock:
            return "".join(self._combined)

    def snapshot(self) -> tuple[str, str, str]:
        """Return (stdout, stderr, combined) as one consistent view."""
        with self._combined_lock:
            combined = "".join(self._combined)
            return self.stdout, self.stderr, combined


class CaptureRunner:
    """Run one child process and capture its output without deadlocking.

    Both pipes are drained concurrently, so a child that fills one pipe
    while the parent waits on the other cannot block. Output accessors may
    be called at any time; while the child runs they return what has been
    read so far.

    Attributes:
        command: Executable that was started, or None before start.
        arguments: Argument string passed to the executable.

    Example:
        ```python
        runner = CaptureRunner().start("git", "status --short")
        if not runner.wait_for_exit(5000):
            runner.kill()
        print(runner.exit_code, runner.stdout)
        ```
    """

    def __init__(self, config: ProcpipeConfig | None = None) -> None:
        """Initialize the CaptureRunner.

        Args:
            config: Settings to use. Defaults to the process-wide config.
        """
        self._config = config if config is not None else get_config()
        self._lock = threading.Lock()
        self._buffer = OutputBuffer()
        self._started = False
        self._process: subprocess.Popen[str] | None = None
        self._readers: tuple[StreamReader, StreamReader] | None = None
        self.command: str | None = None
        self.arguments: str = ""

    def start(
        self,
        command: str,
        arguments: str = "",
        env: Mapping[str, str] | None = None,
    ) -> Self:
        """Launch the child and start draining its output.

        Args:
            command: Executable path or name looked up on PATH.
            arguments: Shell-style argument string.
            env: Environment overrides merged over the parent environment.

        Returns:
            This runner, to allow chaining.

        Raises:
            InvalidUseError: If this runner was already started.
            ProcessStartError: If the process could not be created.
        """
        with self._lock:
            if self._started:
                raise InvalidUseError(f"Process already started: {self.command}")
            self._started = True
            self.command = command
            self.arguments = arguments

            try:
                process = subprocess.Popen(  # noqa: S603
                    build_command_line(command, arguments),
                    **build_popen_kwargs(self._config.decoding, env=env),
                )
            except (OSError, ValueError) as e:
                logger.debug("process_start_failed", command=command, error=str(e))
                raise ProcessStartError(
                    f"Could not start {command}: {e}",
                    command=command,
                    arguments=arguments,
                ) from e

            assert process.stdout is not None and process.stderr is not None
            self._process = process
            self._readers = (
                self._make_reader(process.stdout, "stdout", process.pid),
                self._make_reader(process.stderr, "stderr", process.pid),
            )
            for reader in self._readers:
                reader.start()

        logger.debug("process_started", command=command, pid=process.pid)
        return self

    def _make_reader(
        self, stream: IO[str], stream_name: StreamName, pid: int
    ) -> StreamReader:
        def append(line: str) -> None:
            self._buffer.append(stream_name, line)

        return StreamReader(stream, stream_name, append, pid=pid)

    def _require_started(self) -> tuple[subprocess.Popen[str], tuple[StreamReader, ...]]:
        process, readers = self._process, self._readers
        if process is None or readers is None:
            raise InvalidUseError("Process was never started")
        return process, readers

    def wait_for_exit(self, timeout: Timeout = 0) -> bool:
        """Block until the process has exited and both streams are drained.

        The timeout bounds only the wait for the process itself. Once it
        has exited, the call keeps waiting until both streams reach
        end-of-stream, even past the timeout, so a True return always comes
        with the complete output. A descendant that inherited the pipes
        keeps them open, and the call waits for it too.

        Args:
            timeout: Milliseconds or a timedelta. 0 or None waits
                indefinitely.

        Returns:
            True once the process has exited and no further output will be
            appended. False if the process was still running when the
            timeout elapsed.

        Raises:
            InvalidUseError: If the runner was never started.
        """
        process, readers = self._require_started()
        timeout_ms = to_milliseconds(timeout)

        try:
            process.wait(timeout=timeout_ms / 1000 if timeout_ms else None)
        except subprocess.TimeoutExpired:
            return False
        for reader in readers:
            reader.done.wait()
        return True

    def kill(self) -> int:
        """Force the process to terminate and wait until it has.

        The kill is repeated, each time followed by a bounded wait, until
        the operating system reports the process as exited. Killing a
        process that already exited sends nothing and returns its exit code.

        Returns:
            The exit code of the terminated process.

        Raises:
            InvalidUseError: If the runner was never started.
        """
        process, _ = self._require_started()
        retry_timeout_ms = self._config.capture.kill_retry_timeout_ms

        def attempt() -> bool:
            if process.poll() is None:
                self._send_kill(process)
            self.wait_for_exit(retry_timeout_ms)
            return process.poll() is not None

        retrying = Retrying(
            retry=retry_if_result(lambda exited: not exited),
            wait=wait_none(),
            reraise=True,
        )
        retrying(attempt)
        return process.returncode

    def _send_kill(self, process: subprocess.Popen[str]) -> None:
        try:
            process.kill()
            logger.debug("process_killed", pid=process.pid)
        except ProcessLookupError:
            logger.debug("process_already_gone", pid=process.pid)
        except OSError as e:
            logger.debug("process_kill_failed", pid=process.pid, error=str(e))

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def has_exited(self) -> bool:
        return self._process is not None and self._process.poll() is not None

    @property
    def exit_code(self) -> int | None:
        """Exit code once the process has exited, otherwise None."""
        if self._process is None:
            return None
        return self._process.poll()

    @property
    def stdout(self) -> str:
        return self._buffer.stdout

    @property
    def stderr(self) -> str:
        return self._buffer.stderr

    @property
    def combined(self) -> str:
        return self._buffer.combined

    def result(self) -> ProcessResult:
        """Snapshot the captured output of an exited process.

        Raises:
            InvalidUseError: If the process was never started or still runs.
        """
        self._require_started()
        exit_code = self.exit_code
        if exit_code is None:
            raise InvalidUseError(f"Process has not exited: {self.command}")
        stdout, stderr, combined = self._buffer.snapshot()
        return ProcessResult(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            combined=combined,
        )

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._process is not None and not self.has_exited:
            self.kill()


def run(
    command: str,
    arguments: str = "",
    *,
    timeout: Timeout = None,
    env: Mapping[str, str] | None = None,
    config: ProcpipeConfig | None = None,
) -> ProcessResult:
    """Run a command to completion and return its captured output.

    Args:
        command: Executable path or name looked up on PATH.
        arguments: Shell-style argument string.
        timeout: Milliseconds or a timedelta. None uses the configured
            default; 0 waits indefinitely. The process is killed when the
            timeout elapses.
        env: Environment overrides merged over the parent environment.
        config: Settings to use. Defaults to the process-wide config.

    Returns:
        ProcessResult. Never raises; a process that could not be started
        yields a result with ``start_error`` set and ``exit_code`` equal to
        NOT_STARTED.
    """
    return run_spec(
        ProcessSpec(command=command, arguments=arguments, env=env),
        timeout=timeout,
        config=config,
    )


def run_spec(
    spec: ProcessSpec,
    *,
    timeout: Timeout = None,
    config: ProcpipeConfig | None = None,
) -> ProcessResult:
    """Run a prepared ProcessSpec. See ``run`` for the contract."""
    try:
        effective_config = config if config is not None else get_config()
        if timeout is None:
            timeout = effective_config.capture.default_timeout_ms
        runner = CaptureRunner(effective_config)
        runner.start(spec.command, spec.arguments, spec.env)
        if not runner.wait_for_exit(timeout):
            logger.info(
                "process_timeout_killing",
                command=spec.command,
                pid=runner.pid,
                timeout_ms=to_milliseconds(timeout),
            )
            runner.kill()
        return runner.result()
    except Exception as e:
        logger.debug("run_failed", command=spec.command, error=str(e))
        return ProcessResult.from_start_error(e)
