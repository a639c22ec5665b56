"""
Tests for ProcessRunner.

Child processes are small scripts run with the current interpreter.
"""

import os
import sys
import threading
import time

import pytest

from core.errors import ExecutionError
from core.jobs.runner import ProcessRunner

pytestmark = pytest.mark.skipif(os.name != "posix", reason="signal handling tests need POSIX")


def _script(code):
    return [sys.executable, "-u", "-c", code]


class TestRun:
    """Tests for streamed execution."""

    def test_streams_stdout_lines_in_order(self, tmp_path):
        lines = []
        rc = ProcessRunner().run(
            "job-1",
            _script("for i in range(20): print(f'line {i}')"),
            cwd=tmp_path,
            env=None,
            on_line=lines.append,
        )

        assert rc == 0
        assert lines == [f"line {i}" for i in range(20)]

    def test_captures_stderr_and_exit_code(self, tmp_path):
        lines = []
        rc = ProcessRunner().run(
            "job-1",
            _script("import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"),
            cwd=tmp_path,
            env=None,
            on_line=lines.append,
        )

        assert rc == 3
        assert sorted(lines) == ["err", "out"]

    def test_per_stream_order_preserved(self, tmp_path):
        lines = []
        code = (
            "import sys\n"
            "for i in range(30):\n"
            "    print(f'o{i}')\n"
            "    print(f'e{i}', file=sys.stderr)\n"
        )
        ProcessRunner().run("job-1", _script(code), cwd=tmp_path, env=None, on_line=lines.append)

        assert [l for l in lines if l.startswith("o")] == [f"o{i}" for i in range(30)]
        assert [l for l in lines if l.startswith("e")] == [f"e{i}" for i in range(30)]

    def test_lines_arrive_while_running(self, tmp_path):
        seen_first = threading.Event()
        release = tmp_path / "release"

        def on_line(line):
            if line == "first":
                seen_first.set()

        code = (
            "import os, time\n"
            "print('first')\n"
            f"while not os.path.exists({str(release)!r}): time.sleep(0.01)\n"
            "print('second')\n"
        )
        runner = ProcessRunner()
        result = {}
        thread = threading.Thread(
            target=lambda: result.setdefault(
                "rc", runner.run("job-1", _script(code), tmp_path, None, on_line)
            )
        )
        thread.start()

        assert seen_first.wait(10)
        assert runner.is_running("job-1")
        release.write_text("go")
        thread.join(10)

        assert result["rc"] == 0
        assert not runner.is_running("job-1")

    def test_uses_cwd_and_env(self, tmp_path):
        lines = []
        env = dict(os.environ, LAB_TEST_VALUE="hello")
        ProcessRunner().run(
            "job-1",
            _script("import os; print(os.getcwd()); print(os.environ['LAB_TEST_VALUE'])"),
            cwd=tmp_path,
            env=env,
            on_line=lines.append,
        )

        assert os.path.realpath(lines[0]) == os.path.realpath(tmp_path)
        assert lines[1] == "hello"

    def test_missing_binary_raises_execution_error(self, tmp_path):
        with pytest.raises(ExecutionError):
            ProcessRunner().run(
                "job-1", ["definitely-not-a-real-binary-xyz"], tmp_path, None, lambda line: None
            )

    def test_callback_error_kills_child(self, tmp_path):
        runner = ProcessRunner()
        code = "import time\nprint('tick', flush=True)\ntime.sleep(60)\n"

        def on_line(line):
            raise RuntimeError("consumer gone")

        start = time.monotonic()
        with pytest.raises(RuntimeError):
            runner.run("job-1", _script(code), tmp_path, None, on_line)

        assert time.monotonic() - start < 30
        assert not runner.is_running("job-1")


class TestCapture:
    """Tests for captured (non-streamed) execution."""

    def test_capture_returns_output(self, tmp_path):
        rc, stdout, stderr = ProcessRunner().capture(
            "job-1",
            _script("import sys; print('{\"a\": 1}'); print('warn', file=sys.stderr)"),
            cwd=tmp_path,
            env=None,
        )

        assert rc == 0
        assert stdout.strip() == '{"a": 1}'
        assert stderr.strip() == "warn"


class TestTerminateAll:
    """Tests for shutdown termination."""

    def _start_sleeper(self, runner, tmp_path, job_id, code):
        started = threading.Event()
        result = {}

        def on_line(line):
            started.set()

        def target():
            result["rc"] = runner.run(job_id, _script(code), tmp_path, None, on_line)

        thread = threading.Thread(target=target)
        thread.start()
        assert started.wait(10)
        return thread, result

    def test_sigterm_stops_child(self, tmp_path):
        runner = ProcessRunner()
        thread, result = self._start_sleeper(
            runner, tmp_path, "job-1", "import time\nprint('up')\ntime.sleep(60)\n"
        )

        signalled = runner.terminate_all(grace_period=5)
        thread.join(10)

        assert signalled == ["job-1"]
        assert result["rc"] != 0
        assert not runner.is_running("job-1")

    def test_sigkill_after_grace_period(self, tmp_path):
        runner = ProcessRunner()
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('up')\n"
            "time.sleep(60)\n"
        )
        thread, result = self._start_sleeper(runner, tmp_path, "job-1", code)

        start = time.monotonic()
        runner.terminate_all(grace_period=0.5)
        thread.join(10)

        assert time.monotonic() - start < 10
        assert result["rc"] != 0

    def test_nothing_running(self):
        assert ProcessRunner().terminate_all(grace_period=0) == []

    def test_closed_runner_refuses_new_children(self, tmp_path):
        runner = ProcessRunner()
        runner.terminate_all(grace_period=0)

        assert runner.closed
        with pytest.raises(ExecutionError, match="shutting down"):
            runner.run("job-1", _script("print('late')"), tmp_path, None, lambda line: None)
        assert not runner.is_running("job-1")
