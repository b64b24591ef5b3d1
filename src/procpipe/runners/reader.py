"""Background line reader for one redirected stream.

Each child stream gets its own StreamReader running on its own thread, so
a blocking read on stdout never stalls draining of stderr. The reader
owns its stream: it is the only consumer and it closes the stream once
drained.
"""

from __future__ import annotations

import contextlib
import threading
from collections.abc import Callable
from typing import IO

from procpipe.exceptions import StreamReadError
from procpipe.logging import get_logger
from procpipe.runners.models import StreamName

__all__ = ["StreamReader", "strip_line_terminator"]

logger = get_logger(__name__)


def strip_line_terminator(line: str) -> str:
    """Remove one trailing newline, as produced by text-mode readline()."""
    if line.endswith("\n"):
        line = line[:-1]
        if line.endswith("\r"):
            line = line[:-1]
    return line


class StreamReader:
    """Drain one stream line by line on a dedicated thread.

    Every complete line is passed, without its terminator, to ``on_line``.
    End-of-stream ends the loop normally. Any exception raised while
    reading, or by ``on_line`` itself, ends the loop too; it is wrapped in
    a StreamReadError, stored on ``failure`` and passed to ``on_failure``
    exactly once. Nothing is re-raised on the reader thread.

    ``on_complete`` runs once after the loop ends, whatever the reason,
    and ``done`` is set after it returns.

    Attributes:
        stream_name: Which child stream this reader drains.
        failure: The read failure, or None after a clean end-of-stream.
        done: Set once reading has finished and ``on_complete`` has run.
    """

    def __init__(
        self,
        stream: IO[str],
        stream_name: StreamName,
        on_line: Callable[[str], None],
        *,
        on_failure: Callable[[StreamReadError], None] | None = None,
        on_complete: Callable[[StreamReader], None] | None = None,
        pid: int | None = None,
    ) -> None:
        self.stream_name = stream_name
        self.failure: StreamReadError | None = None
        self.done = threading.Event()
        self.lines_read = 0
        self._stream = stream
        self._on_line = on_line
        self._on_failure = on_failure
        self._on_complete = on_complete
        self._log = logger.bind(stream=stream_name, pid=pid)
        self._thread = threading.Thread(
            target=self._run,
            name=f"procpipe-{stream_name}-{pid}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the reader thread. Returns True if it finished.

        Called from the reader's own thread (an observer reacting to its
        own stream), this returns False instead of deadlocking.
        """
        if threading.current_thread() is self._thread:
            return False
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        self._log.debug("reader_started")
        try:
            for raw in iter(self._stream.readline, ""):
                self._on_line(strip_line_terminator(raw))
                self.lines_read += 1
        except Exception as e:
            self.failure = StreamReadError(
                f"Reading {self.stream_name} failed: {e}",
                stream=self.stream_name,
            )
            self.failure.__cause__ = e
            self._log.warning("reader_failed", error=str(e))
            if self._on_failure is not None:
                self._report_failure(self.failure)
        finally:
            with contextlib.suppress(OSError, ValueError):
                self._stream.close()
            self._log.debug("reader_finished", lines=self.lines_read)
            try:
                if self._on_complete is not None:
                    self._on_complete(self)
            except Exception:
                self._log.exception("completion_handler_raised")
            finally:
                self.done.set()

    def _report_failure(self, failure: StreamReadError) -> None:
        assert self._on_failure is not None
        try:
            self._on_failure(failure)
        except Exception:
            self._log.exception("failure_handler_raised")
