"""Event-driven background process.

BackgroundProcess suits long-running children: instead of buffering, it
reports every line as it arrives, accepts writes to the child's standard
input, and notifies observers once when the process exits.

Lines from stdout and stderr are delivered by two independent reader
threads. Order is preserved within each stream, but the relative order of
an stdout line and an stderr line is not guaranteed to match the order in
which the child wrote them.
"""

from __future__ import annotations

import subprocess
import threading
import time
from collections.abc import Callable, Mapping
from datetime import timedelta
from types import TracebackType
from typing import IO, Self

from procpipe.config import ProcpipeConfig, get_config
from procpipe.exceptions import (
    InvalidUseError,
    ProcessStartError,
    ProcessTimeoutError,
    StreamReadError,
)
from procpipe.logging import get_logger
from procpipe.runners.launch import (
    build_command_line,
    build_popen_kwargs,
    to_milliseconds,
)
from procpipe.runners.models import (
    NOT_STARTED,
    ExceptionEvent,
    ExitEvent,
    ProcessState,
    StreamLine,
    StreamName,
)
from procpipe.runners.observers import Observers
from procpipe.runners.reader import StreamReader

__all__ = ["BackgroundProcess", "PollCallback"]

logger = get_logger(__name__)

# Returns True to stop waiting early.
PollCallback = Callable[[], bool]


class BackgroundProcess:
    """A child process observed through line, exit and failure events.

    Observer channels:
        output_received: StreamLine for every stdout line.
        error_received: StreamLine for every stderr line.
        exited: ExitEvent, at most once per lifecycle.
        failed: ExceptionEvent for a start failure or a stream read failure.

    Line observers run on the reader thread of their stream and should
    return quickly; a slow observer stalls delivery on that stream. An
    exception raised by a line observer ends that stream's reader and is
    reported through ``failed``. Exceptions from ``exited`` and ``failed``
    observers are logged and dropped.

    The exit notification fires once, from whichever path gets there
    first: the last reader finishing (normally or with a read failure) or
    a watcher thread that reaps the process. The watcher lets the readers
    drain first and only goes ahead on its own once they have been silent
    for ``background.exit_grace_ms``, which happens when a descendant
    still holds the pipes open. Lines read after that arrive after the
    exit notification. ``close()`` suppresses it.

    Example:
        ```python
        proc = BackgroundProcess()
        proc.output_received.subscribe(lambda line: print(line.text))
        proc.exited.subscribe(lambda event: print("exit", event.exit_code))
        proc.start("python", "-u worker.py")
        proc.write_line("job 1")
        proc.wait(timedelta(seconds=30))
        proc.close()
        ```
    """

    def __init__(self, config: ProcpipeConfig | None = None) -> None:
        """Initialize an unstarted BackgroundProcess.

        Args:
            config: Settings to use. Defaults to the process-wide config.
        """
        self._config = config if config is not None else get_config()
        self._lock = threading.RLock()
        self._state = ProcessState.CREATED
        self._process: subprocess.Popen[str] | None = None
        self._readers: tuple[StreamReader, ...] = ()
        self._pending_readers = 0
        self._exit_handled = False
        self._exit_code: int | None = None
        self._closing = False
        self._closed = threading.Event()
        self._drained = threading.Event()
        self._file_name: str | None = None
        self._arguments = ""

        self.output_received: Observers[StreamLine] = Observers("output_received")
        self.error_received: Observers[StreamLine] = Observers("error_received")
        self.exited: Observers[ExitEvent] = Observers("exited")
        self.failed: Observers[ExceptionEvent] = Observers("failed")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def started(self) -> bool:
        """True once start() has been called, even if it failed."""
        return self._state is not ProcessState.CREATED

    @property
    def running(self) -> bool:
        """True while the started process has not exited."""
        process = self._process
        return (
            self._state is ProcessState.RUNNING
            and process is not None
            and process.poll() is None
        )

    @property
    def file_name(self) -> str | None:
        return self._file_name

    @property
    def arguments(self) -> str:
        return self._arguments

    @property
    def pid(self) -> int | None:
        process = self._process
        return process.pid if process is not None else None

    @property
    def exit_code(self) -> int | None:
        if self._exit_code is not None:
            return self._exit_code
        process = self._process
        return process.poll() if process is not None else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        file_name: str,
        args: str = "",
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Launch the process with stdin, stdout and stderr redirected.

        Args:
            file_name: Executable path or name looked up on PATH.
            args: Shell-style argument string.
            env: Environment overrides merged over the parent environment.

        Raises:
            InvalidUseError: If start() was already called on this instance.
            ProcessStartError: If the process could not be created. A
                matching ExceptionEvent is emitted first.
        """
        start_error: ProcessStartError | None = None
        with self._lock:
            if self._state is not ProcessState.CREATED:
                raise InvalidUseError(f"Process already started: {self._file_name}")
            self._file_name = file_name
            self._arguments = args

            try:
                process = subprocess.Popen(  # noqa: S603
                    build_command_line(file_name, args),
                    **build_popen_kwargs(
                        self._config.decoding, env=env, redirect_stdin=True
                    ),
                )
            except (OSError, ValueError) as e:
                self._state = ProcessState.TERMINATED
                start_error = ProcessStartError(
                    f"Could not start {file_name}: {e}",
                    command=file_name,
                    arguments=args,
                )
                start_error.__cause__ = e
            else:
                assert process.stdout is not None and process.stderr is not None
                self._process = process
                self._state = ProcessState.RUNNING
                self._pending_readers = 2
                self._readers = (
                    self._make_reader(
                        process.stdout, "stdout", self.output_received, process.pid
                    ),
                    self._make_reader(
                        process.stderr, "stderr", self.error_received, process.pid
                    ),
                )
                for reader in self._readers:
                    reader.start()
                threading.Thread(
                    target=self._watch_exit,
                    args=(process, self._readers),
                    name=f"procpipe-exit-{process.pid}",
                    daemon=True,
                ).start()

        if start_error is not None:
            logger.debug(
                "process_start_failed", command=file_name, error=str(start_error)
            )
            self.failed.emit_safely(ExceptionEvent(cause=start_error))
            raise start_error

        logger.debug("process_started", command=file_name, pid=self.pid)

    def _make_reader(
        self,
        stream: IO[str],
        stream_name: StreamName,
        observers: Observers[StreamLine],
        pid: int,
    ) -> StreamReader:
        def deliver(text: str) -> None:
            observers.emit(StreamLine(text=text, stream=stream_name))

        return StreamReader(
            stream,
            stream_name,
            deliver,
            on_failure=self._reader_failed,
            on_complete=self._reader_finished,
            pid=pid,
        )

    def _reader_failed(self, failure: StreamReadError) -> None:
        with self._lock:
            if self._exit_handled:
                return
        self.failed.emit_safely(ExceptionEvent(cause=failure, stream=failure.stream))

    def _reader_finished(self, reader: StreamReader) -> None:
        with self._lock:
            self._pending_readers -= 1
            last = self._pending_readers == 0
            process = self._process
        if not last:
            return
        try:
            if process is not None:
                self._notify_exited(process.wait())
        finally:
            self._drained.set()

    def _watch_exit(
        self, process: subprocess.Popen[str], readers: tuple[StreamReader, ...]
    ) -> None:
        exit_code = process.wait()
        grace = self._config.background.exit_grace_ms / 1000
        lines_read = sum(reader.lines_read for reader in readers)
        while not self._drained.wait(grace):
            current = sum(reader.lines_read for reader in readers)
            if current == lines_read:
                logger.debug(
                    "exited_before_drain", pid=process.pid, exit_code=exit_code
                )
                self._notify_exited(exit_code)
                return
            lines_read = current

    def _notify_exited(self, exit_code: int) -> None:
        with self._lock:
            if self._exit_handled:
                return
            self._exit_handled = True
            self._exit_code = exit_code
            self._state = ProcessState.TERMINATED
        logger.debug("process_exited", command=self._file_name, exit_code=exit_code)
        self.exited.emit_safely(ExitEvent(exit_code=exit_code))

    # ------------------------------------------------------------------
    # Standard input
    # ------------------------------------------------------------------

    def _require_stdin(self) -> IO[str]:
        with self._lock:
            process = self._process
            if process is None or process.stdin is None:
                raise InvalidUseError("Process is not running")
            return process.stdin

    def write(self, text: str) -> None:
        """Write raw text to the child's standard input.

        Errors such as BrokenPipeError are raised to the caller unchanged.
        """
        stdin = self._require_stdin()
        stdin.write(text)
        stdin.flush()

    def write_line(self, text: str) -> None:
        """Write text followed by a line terminator to standard input."""
        self.write(f"{text}\n")

    def close_stdin(self) -> None:
        """Close standard input so the child sees end-of-file."""
        stdin = self._require_stdin()
        try:
            stdin.close()
        except BrokenPipeError:
            logger.debug("stdin_already_broken", pid=self.pid)

    # ------------------------------------------------------------------
    # Waiting and teardown
    # ------------------------------------------------------------------

    def wait(
        self,
        timeout: int | float | timedelta | None = None,
        poll_callback: PollCallback | None = None,
        throw_on_timeout: bool = False,
    ) -> bool:
        """Wait until both output streams have been drained.

        Returns as soon as draining completes. Between checks, every
        ``background.poll_interval_ms``, ``poll_callback`` is invoked; if it
        returns True the wait ends early and is treated as a timeout.

        Args:
            timeout: Milliseconds or a timedelta. None waits without a
                limit. 0 checks once and returns at once, unlike
                ``CaptureRunner.wait_for_exit`` where 0 means no limit.
            poll_callback: Cooperative cancellation check. Must not block
                for long.
            throw_on_timeout: Raise instead of returning False.

        Returns:
            True if the process finished in time, otherwise False.

        Raises:
            InvalidUseError: If the process was never successfully started.
            ProcessTimeoutError: On timeout when ``throw_on_timeout`` is set.
        """
        if not self._readers:
            raise InvalidUseError("Process was never started")

        timeout_ms = to_milliseconds(timeout)
        interval = self._config.background.poll_interval_ms / 1000
        deadline = None if timeout is None else time.monotonic() + timeout_ms / 1000

        while True:
            if deadline is None:
                slice_seconds = interval
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                slice_seconds = min(interval, remaining)
            if self._drained.wait(slice_seconds):
                return True
            if poll_callback is not None and poll_callback():
                logger.debug("wait_cancelled", pid=self.pid)
                break

        if self._drained.is_set():
            return True
        if throw_on_timeout:
            raise ProcessTimeoutError(
                f"Process did not finish within {timeout_ms}ms: {self._file_name}",
                timeout_ms=timeout_ms,
                command=self._file_name,
            )
        return False

    def close(self) -> int:
        """Tear the process down and return its exit code.

        Suppresses the exit notification, kills the process if it is still
        running, waits for both readers, reaps the process, and releases the
        handle. Calling close() again returns the same exit code.

        Returns:
            The exit code, or NOT_STARTED if the process never launched.
        """
        with self._lock:
            self._exit_handled = True
            if self._closing:
                owner = False
            else:
                self._closing = True
                owner = True
            process = self._process
            readers = self._readers

        if not owner:
            self._closed.wait()
            return self._exit_code if self._exit_code is not None else NOT_STARTED

        try:
            if process is None:
                return self._exit_code if self._exit_code is not None else NOT_STARTED

            if process.poll() is None:
                try:
                    process.kill()
                    logger.debug("process_killed", pid=process.pid)
                except OSError as e:
                    logger.debug("process_kill_failed", pid=process.pid, error=str(e))

            for reader in readers:
                reader.join()
            exit_code = process.wait()
            if process.stdin is not None:
                try:
                    process.stdin.close()
                except OSError:
                    logger.debug("stdin_close_failed", pid=process.pid)

            with self._lock:
                self._exit_code = exit_code
                self._process = None
                self._state = ProcessState.TERMINATED
            logger.debug("process_closed", pid=process.pid, exit_code=exit_code)
            return exit_code
        finally:
            with self._lock:
                self._state = ProcessState.TERMINATED
            self._closed.set()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
