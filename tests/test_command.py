"""Tests for the stageci.command module (real subprocesses)."""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import pytest

from stageci.command import (
    CANCELLED_EXIT_CODE,
    NOT_FOUND_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    CommandRunner,
)
from stageci.dsl import sh
from stageci.model import StepOutcome

PY = f'"{sys.executable}"'

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="process-group handling is POSIX only")


@pytest.fixture
def runner(tmp_path: Path) -> CommandRunner:
    return CommandRunner(tmp_path)


class TestExecute:
    def test_captures_stdout_and_exit_code(self, runner: CommandRunner) -> None:
        out = runner.execute("echo hello", None, None, 10)
        assert out.exit_code == 0
        assert out.stdout.strip() == "hello"
        assert out.outcome == StepOutcome.SUCCEEDED
        assert out.duration_ms >= 0

    def test_non_zero_exit_does_not_raise(self, runner: CommandRunner) -> None:
        out = runner.execute(f"{PY} -c \"import sys; sys.stderr.write('boom'); sys.exit(3)\"", None, None, 10)
        assert out.exit_code == 3
        assert out.stderr == "boom"
        assert out.outcome == StepOutcome.FAILED

    def test_env_overrides(self, runner: CommandRunner) -> None:
        out = runner.execute("echo $GREETING", None, {"GREETING": "bonjour"}, 10)
        assert out.stdout.strip() == "bonjour"

    def test_timeout_kills_process(self, runner: CommandRunner) -> None:
        start = time.monotonic()
        out = runner.execute("sleep 5", None, None, 0.3)
        assert time.monotonic() - start < 4
        assert out.outcome == StepOutcome.TIMED_OUT
        assert out.exit_code == TIMEOUT_EXIT_CODE
        assert "Timed out" in out.stderr

    def test_timeout_kills_whole_pipeline(self, runner: CommandRunner) -> None:
        start = time.monotonic()
        out = runner.execute("sleep 5 | cat", None, None, 0.3)
        assert time.monotonic() - start < 4
        assert out.outcome == StepOutcome.TIMED_OUT

    def test_cancel_event_kills_process(self, runner: CommandRunner) -> None:
        cancel = threading.Event()
        threading.Timer(0.2, cancel.set).start()
        start = time.monotonic()
        out = runner.execute("sleep 5", None, None, 30, cancel)
        assert time.monotonic() - start < 4
        assert out.outcome == StepOutcome.CANCELLED
        assert out.exit_code == CANCELLED_EXIT_CODE

    def test_shell_exit_code_passes_through(self, runner: CommandRunner) -> None:
        out = runner.execute("docker-does-not-exist-xyz; exit 127", None, {"PATH": "/nonexistent"}, 10)
        assert out.exit_code == 127
        assert out.outcome == StepOutcome.FAILED


class TestRun:
    def test_runs_in_workdir(self, tmp_path: Path, runner: CommandRunner) -> None:
        (tmp_path / "app").mkdir()
        (tmp_path / "app" / "marker.txt").write_text("x")
        result = runner.run(sh("list", "ls", cwd="app"))
        assert result.ok
        assert "marker.txt" in result.stdout
        assert result.name == "list"
        assert result.command == "ls"

    def test_missing_workdir_is_a_failed_result(self, runner: CommandRunner) -> None:
        result = runner.run(sh("list", "ls", cwd="nope"))
        assert result.outcome == StepOutcome.FAILED
        assert result.exit_code == NOT_FOUND_EXIT_CODE
        assert "workdir not found" in result.stderr

    def test_step_timeout_wins(self, runner: CommandRunner) -> None:
        result = runner.run(sh("slow", "sleep 5", timeout=0.2), timeout=30)
        assert result.outcome == StepOutcome.TIMED_OUT

    def test_run_env_under_step_env(self, runner: CommandRunner) -> None:
        step = sh("tag", "echo $TAG-$MODE", env={"TAG": "v${STAGECI_RUN_ID}", "MODE": "step"})
        result = runner.run(step, env={"STAGECI_RUN_ID": "42", "MODE": "run"})
        assert result.stdout.strip() == "v42-step"

    def test_docker_hint_when_not_found(self, runner: CommandRunner) -> None:
        result = runner.run(sh("build", "docker build .", env={"PATH": "/nonexistent"}))
        assert result.exit_code == 127
        assert "Hint: Install Docker" in result.stderr

    def test_binary_output_is_decoded_with_replacement(self, runner: CommandRunner) -> None:
        result = runner.run(sh("dump", "printf '\\377\\376'; printf '\\377' >&2; exit 0"))
        assert result.exit_code == 0
        assert result.ok
        assert "�" in result.stdout
        assert "�" in result.stderr
