from __future__ import annotations


class ProcpipeError(Exception):
    """Base exception class for all procpipe errors.

    Catch this at application boundaries to handle every library fault while
    letting unrelated system exceptions propagate.

    Attributes:
        message: Human-readable error message describing what went wrong.

    Example:
        ```python
        try:
            runner.start("tool", "--flag")
        except ProcpipeError as e:
            log.error("runner_failed", error=e.message)
        ```
    """

    def __init__(self, message: str) -> None:
        """Initialize the ProcpipeError.

        Args:
            message: Human-readable error message.
        """
        self.message = message
        super().__init__(message)
