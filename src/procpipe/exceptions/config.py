from __future__ import annotations

from typing import Any

from procpipe.exceptions.base import ProcpipeError


class ConfigError(ProcpipeError):
    """Exception for configuration loading, parsing, and validation errors.

    Attributes:
        message: Human-readable error message describing the configuration issue.
        field: Optional dotted field name that caused the error.
        value: Optional value that failed validation.

    Examples:
        ```python
        raise ConfigError(
            "Invalid configuration value",
            field="capture.kill_retry_timeout_ms",
            value=-1,
        )
        ```
    """

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any = None,
    ) -> None:
        """Initialize the ConfigError.

        Args:
            message: Human-readable error message.
            field: Optional field name that caused the error.
            value: Optional value that failed validation.
        """
        self.field = field
        self.value = value
        super().__init__(message)
