"""Tests for runner data models."""

from __future__ import annotations

import dataclasses

import pytest

from procpipe.exceptions import ProcessStartError
from procpipe.runners.models import (
    NOT_STARTED,
    ExceptionEvent,
    ExitEvent,
    ProcessResult,
    ProcessSpec,
    ProcessState,
    StreamLine,
)


class TestProcessResult:
    """Tests for ProcessResult."""

    def test_successful_result(self) -> None:
        result = ProcessResult(
            exit_code=0, stdout="hi\n", stderr="", combined="hi\n"
        )

        assert result.started is True
        assert result.success is True
        assert result.start_error is None

    def test_nonzero_exit_is_not_success(self) -> None:
        result = ProcessResult(exit_code=2, stdout="", stderr="bad\n", combined="bad\n")

        assert result.started is True
        assert result.success is False

    def test_from_start_error(self) -> None:
        """A start failure carries its message in stderr and combined."""
        error = ProcessStartError("Could not start nope: not found", command="nope")

        result = ProcessResult.from_start_error(error)

        assert result.exit_code == NOT_STARTED
        assert result.exit_code == -(2**31)
        assert result.stdout == ""
        assert result.stderr == "Could not start nope: not found"
        assert result.combined == result.stderr
        assert result.start_error is error
        assert result.started is False
        assert result.success is False

    def test_is_frozen(self) -> None:
        result = ProcessResult(exit_code=0, stdout="", stderr="", combined="")

        with pytest.raises(dataclasses.FrozenInstanceError):
            result.exit_code = 1  # type: ignore[misc]


class TestEvents:
    """Tests for event payloads."""

    def test_stream_line_fields(self) -> None:
        line = StreamLine(text="A", stream="stdout")

        assert line.text == "A"
        assert line.stream == "stdout"
        assert line.timestamp > 0

    def test_exit_event(self) -> None:
        assert ExitEvent(exit_code=3).exit_code == 3

    def test_exception_event_defaults_to_no_stream(self) -> None:
        cause = OSError("boom")

        event = ExceptionEvent(cause=cause)

        assert event.cause is cause
        assert event.stream is None


class TestProcessSpec:
    def test_defaults(self) -> None:
        spec = ProcessSpec(command="git")

        assert spec.arguments == ""
        assert spec.env is None


def test_process_state_values() -> None:
    assert [state.value for state in ProcessState] == [
        "created",
        "running",
        "terminated",
    ]
