"""Tests for BackgroundProcess using a mocked Popen."""

from __future__ import annotations

import io
import subprocess
import threading
from unittest.mock import MagicMock, patch

import pytest

from procpipe.config import ProcpipeConfig
from procpipe.exceptions import (
    InvalidUseError,
    ProcessStartError,
    ProcessTimeoutError,
    StreamReadError,
)
from procpipe.runners.background import BackgroundProcess
from procpipe.runners.models import (
    NOT_STARTED,
    ExceptionEvent,
    ExitEvent,
    ProcessState,
    StreamLine,
)
from tests.fixtures.runners import (
    BlockingStream,
    EventRecorder,
    FailingStream,
    make_mock_process,
)

POPEN = "procpipe.runners.background.subprocess.Popen"


def subscribe_all(proc: BackgroundProcess, recorder: EventRecorder) -> None:
    proc.output_received.subscribe(recorder)
    proc.error_received.subscribe(recorder)
    proc.exited.subscribe(recorder)
    proc.failed.subscribe(recorder)


def blocking_process(returncode: int = -9) -> MagicMock:
    """Mock process whose pipes stay open until kill() is called."""
    process = make_mock_process(returncode=returncode)
    process.stdout = BlockingStream()
    process.stderr = BlockingStream()
    process.poll.return_value = None
    killed = threading.Event()

    def kill() -> None:
        process.poll.return_value = returncode
        killed.set()
        process.stdout.release.set()
        process.stderr.release.set()

    def wait(timeout: float | None = None) -> int:
        killed.wait(10)
        return returncode

    process.kill.side_effect = kill
    process.wait.side_effect = wait
    return process


class TestStart:
    def test_initial_state(self, fast_config: ProcpipeConfig) -> None:
        proc = BackgroundProcess(fast_config)

        assert proc.state is ProcessState.CREATED
        assert proc.started is False
        assert proc.running is False
        assert proc.pid is None
        assert proc.exit_code is None

    def test_start_redirects_all_streams(self, fast_config: ProcpipeConfig) -> None:
        process = make_mock_process()

        with patch(POPEN, return_value=process) as popen:
            proc = BackgroundProcess(fast_config)
            proc.start("worker", "--serve")
            proc.wait(5000)

        kwargs = popen.call_args.kwargs
        assert kwargs["stdin"] is subprocess.PIPE
        assert kwargs["stdout"] is subprocess.PIPE
        assert kwargs["stderr"] is subprocess.PIPE
        assert proc.file_name == "worker"
        assert proc.arguments == "--serve"
        assert proc.started is True

    def test_start_twice_is_invalid(self, fast_config: ProcpipeConfig) -> None:
        with patch(POPEN, return_value=make_mock_process()):
            proc = BackgroundProcess(fast_config)
            proc.start("worker")

            with pytest.raises(InvalidUseError):
                proc.start("worker")

    def test_start_failure_emits_event_and_raises(
        self, fast_config: ProcpipeConfig, recorder: EventRecorder
    ) -> None:
        proc = BackgroundProcess(fast_config)
        proc.failed.subscribe(recorder)

        with patch(POPEN, side_effect=FileNotFoundError(2, "No such file")):
            with pytest.raises(ProcessStartError) as exc_info:
                proc.start("missing-worker")

        events = recorder.of_type(ExceptionEvent)
        assert len(events) == 1
        assert events[0].cause is exc_info.value
        assert events[0].stream is None
        assert proc.state is ProcessState.TERMINATED

        with pytest.raises(InvalidUseError):
            proc.start("missing-worker")
        with pytest.raises(InvalidUseError):
            proc.wait(100)
        assert proc.close() == NOT_STARTED


class TestEvents:
    def test_lines_then_single_exit(
        self, fast_config: ProcpipeConfig, recorder: EventRecorder
    ) -> None:
        process = make_mock_process(stdout="A\n", stderr="B\n", returncode=0)

        with patch(POPEN, return_value=process):
            proc = BackgroundProcess(fast_config)
            subscribe_all(proc, recorder)
            proc.start("worker")
            assert proc.wait(5000) is True

        lines = recorder.of_type(StreamLine)
        assert {(line.text, line.stream) for line in lines} == {
            ("A", "stdout"),
            ("B", "stderr"),
        }
        exits = recorder.of_type(ExitEvent)
        assert exits == [recorder.events[-1]]
        assert exits[0].exit_code == 0
        assert proc.exit_code == 0
        assert proc.state is ProcessState.TERMINATED

    def test_each_stream_on_its_own_channel(self, fast_config: ProcpipeConfig) -> None:
        process = make_mock_process(stdout="o1\no2\n", stderr="e1\n")
        out: list[str] = []
        err: list[str] = []

        with patch(POPEN, return_value=process):
            proc = BackgroundProcess(fast_config)
            proc.output_received.subscribe(lambda line: out.append(line.text))
            proc.error_received.subscribe(lambda line: err.append(line.text))
            proc.start("worker")
            proc.wait(5000)

        assert out == ["o1", "o2"]
        assert err == ["e1"]

    def test_read_failure_reported_before_exit(
        self, fast_config: ProcpipeConfig, recorder: EventRecorder
    ) -> None:
        process = make_mock_process(returncode=1)
        process.stdout = FailingStream("partial\n")

        with patch(POPEN, return_value=process):
            proc = BackgroundProcess(fast_config)
            subscribe_all(proc, recorder)
            proc.start("worker")
            assert proc.wait(5000) is True

        failures = recorder.of_type(ExceptionEvent)
        assert len(failures) == 1
        assert isinstance(failures[0].cause, StreamReadError)
        assert failures[0].stream == "stdout"
        exits = recorder.of_type(ExitEvent)
        assert len(exits) == 1
        assert recorder.events.index(failures[0]) < recorder.events.index(exits[0])

    def test_line_observer_error_becomes_failure(
        self, fast_config: ProcpipeConfig, recorder: EventRecorder
    ) -> None:
        process = make_mock_process(stdout="boom\n")

        def explode(line: StreamLine) -> None:
            raise RuntimeError("observer bug")

        with patch(POPEN, return_value=process):
            proc = BackgroundProcess(fast_config)
            proc.output_received.subscribe(explode)
            proc.failed.subscribe(recorder)
            proc.exited.subscribe(recorder)
            proc.start("worker")
            proc.wait(5000)

        failures = recorder.of_type(ExceptionEvent)
        assert len(failures) == 1
        assert isinstance(failures[0].cause.__cause__, RuntimeError)
        assert len(recorder.of_type(ExitEvent)) == 1

    def test_exit_observer_error_is_isolated(
        self, fast_config: ProcpipeConfig, recorder: EventRecorder
    ) -> None:
        def broken(event: ExitEvent) -> None:
            raise RuntimeError("observer bug")

        with patch(POPEN, return_value=make_mock_process(returncode=5)):
            proc = BackgroundProcess(fast_config)
            proc.exited.subscribe(broken)
            proc.exited.subscribe(recorder)
            proc.start("worker")
            assert proc.wait(5000) is True

        assert [e.exit_code for e in recorder.of_type(ExitEvent)] == [5]

    def test_exit_reported_while_pipes_stay_open(
        self, fast_config: ProcpipeConfig, recorder: EventRecorder
    ) -> None:
        """A descendant holding the pipes must not hold back the exit event."""
        process = make_mock_process(returncode=3)
        process.stdout = BlockingStream("A\n")
        process.stderr = BlockingStream()
        exited = threading.Event()

        with patch(POPEN, return_value=process):
            proc = BackgroundProcess(fast_config)
            subscribe_all(proc, recorder)
            proc.exited.subscribe(lambda event: exited.set())
            proc.start("worker")
            try:
                assert exited.wait(5)
                assert proc.state is ProcessState.TERMINATED
                assert proc.wait(0) is False
            finally:
                process.stdout.release.set()
                process.stderr.release.set()

            assert proc.wait(5000) is True
            assert proc.close() == 3

        process.kill.assert_not_called()
        exits = recorder.of_type(ExitEvent)
        assert [e.exit_code for e in exits] == [3]
        lines = recorder.of_type(StreamLine)
        assert [line.text for line in lines] == ["A"]
        assert recorder.events.index(lines[0]) < recorder.events.index(exits[0])


class TestStdin:
    def test_write_before_start_is_invalid(self, fast_config: ProcpipeConfig) -> None:
        with pytest.raises(InvalidUseError):
            BackgroundProcess(fast_config).write("x")

    def test_write_and_write_line(self, fast_config: ProcpipeConfig) -> None:
        process = blocking_process()
        stdin = io.StringIO()
        process.stdin = stdin

        with patch(POPEN, return_value=process):
            proc = BackgroundProcess(fast_config)
            proc.start("worker")
            proc.write("abc")
            proc.write_line("def")
            written = stdin.getvalue()
            proc.close()

        assert written == "abcdef\n"

    def test_write_errors_surface(self, fast_config: ProcpipeConfig) -> None:
        process = blocking_process()
        process.stdin = MagicMock()
        process.stdin.write.side_effect = BrokenPipeError()

        with patch(POPEN, return_value=process):
            proc = BackgroundProcess(fast_config)
            proc.start("worker")
            with pytest.raises(BrokenPipeError):
                proc.write_line("hello")
            proc.close()


class TestWait:
    def test_poll_callback_cancels_wait(self, fast_config: ProcpipeConfig) -> None:
        process = blocking_process()
        calls: list[int] = []

        def cancel_after_three() -> bool:
            calls.append(1)
            return len(calls) >= 3

        with patch(POPEN, return_value=process):
            proc = BackgroundProcess(fast_config)
            proc.start("worker")
            assert proc.wait(10_000, cancel_after_three) is False
            proc.close()

        assert len(calls) == 3

    def test_timeout_returns_false(self, fast_config: ProcpipeConfig) -> None:
        with patch(POPEN, return_value=blocking_process()):
            proc = BackgroundProcess(fast_config)
            proc.start("worker")
            assert proc.wait(30) is False
            proc.close()

    def test_timeout_can_raise(self, fast_config: ProcpipeConfig) -> None:
        with patch(POPEN, return_value=blocking_process()):
            proc = BackgroundProcess(fast_config)
            proc.start("worker")
            with pytest.raises(ProcessTimeoutError) as exc_info:
                proc.wait(30, throw_on_timeout=True)
            proc.close()

        assert exc_info.value.timeout_ms == 30
        assert exc_info.value.command == "worker"

    def test_zero_timeout_returns_at_once(self, fast_config: ProcpipeConfig) -> None:
        calls: list[int] = []

        with patch(POPEN, return_value=blocking_process()):
            proc = BackgroundProcess(fast_config)
            proc.start("worker")
            assert proc.wait(0, lambda: calls.append(1) or False) is False
            with pytest.raises(ProcessTimeoutError):
                proc.wait(0, throw_on_timeout=True)
            proc.close()

        assert calls == []

    def test_zero_timeout_after_drain_is_true(
        self, fast_config: ProcpipeConfig
    ) -> None:
        with patch(POPEN, return_value=make_mock_process()):
            proc = BackgroundProcess(fast_config)
            proc.start("worker")
            assert proc.wait(5000) is True
            assert proc.wait(0) is True

    def test_wait_before_start_is_invalid(self, fast_config: ProcpipeConfig) -> None:
        with pytest.raises(InvalidUseError):
            BackgroundProcess(fast_config).wait(10)


class TestClose:
    def test_close_suppresses_exit_event(
        self, fast_config: ProcpipeConfig, recorder: EventRecorder
    ) -> None:
        process = blocking_process(returncode=-9)

        with patch(POPEN, return_value=process):
            proc = BackgroundProcess(fast_config)
            subscribe_all(proc, recorder)
            proc.start("worker")
            assert proc.running is True
            exit_code = proc.close()

        process.kill.assert_called_once()
        assert exit_code == -9
        assert recorder.of_type(ExitEvent) == []
        assert proc.state is ProcessState.TERMINATED
        assert proc.running is False

    def test_close_is_idempotent(self, fast_config: ProcpipeConfig) -> None:
        with patch(POPEN, return_value=make_mock_process(returncode=3)):
            proc = BackgroundProcess(fast_config)
            proc.start("worker")
            proc.wait(5000)

            assert proc.close() == 3
            assert proc.close() == 3

    def test_close_never_started(self, fast_config: ProcpipeConfig) -> None:
        proc = BackgroundProcess(fast_config)

        assert proc.close() == NOT_STARTED
        with pytest.raises(InvalidUseError):
            proc.start("worker")

    def test_close_exited_process_does_not_kill(
        self, fast_config: ProcpipeConfig
    ) -> None:
        process = make_mock_process(returncode=0)

        with patch(POPEN, return_value=process):
            proc = BackgroundProcess(fast_config)
            proc.start("worker")
            proc.wait(5000)
            proc.close()

        process.kill.assert_not_called()

    def test_close_from_exit_observer(self, fast_config: ProcpipeConfig) -> None:
        codes: list[int] = []

        with patch(POPEN, return_value=make_mock_process(returncode=7)):
            proc = BackgroundProcess(fast_config)
            proc.exited.subscribe(lambda event: codes.append(proc.close()))
            proc.start("worker")
            assert proc.wait(5000) is True

        assert codes == [7]

    def test_context_manager_closes(self, fast_config: ProcpipeConfig) -> None:
        process = blocking_process(returncode=-15)

        with patch(POPEN, return_value=process):
            with BackgroundProcess(fast_config) as proc:
                proc.start("worker")

        process.kill.assert_called_once()
        assert proc.exit_code == -15
