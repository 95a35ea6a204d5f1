"""Tests for the stageci.executor module."""

from __future__ import annotations

import threading
import time

import pytest

from stageci.dsl import job, sh, wf
from stageci.executor import Executor
from stageci.model import JobStatus, RunOutcome
from stageci.run import Run
from stageci.workers import WorkerPool

S, F, K = JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED


def _execute(graph, runner, **options) -> Run:
    run = Run(graph, run_id="test-run")
    Executor(run, runner, **options).execute()
    return run


class TestRunConditions:
    """The build -> test -> cleanup(always) -> deploy pipeline."""

    def test_all_succeed(self, ci_graph, fake_runner) -> None:
        run = _execute(ci_graph, fake_runner, concurrency=2)
        assert run.statuses() == {"build": S, "test": S, "cleanup": S, "deploy": S}
        assert run.outcome == RunOutcome.SUCCESS
        assert fake_runner.commands() == ["build", "test", "cleanup", "deploy"]

    def test_failed_test_still_cleans_up(self, ci_graph, make_runner) -> None:
        runner = make_runner(exit_codes={"test": 1})
        run = _execute(ci_graph, runner, concurrency=2)

        assert run.statuses() == {"build": S, "test": F, "cleanup": S, "deploy": K}
        assert run.outcome == RunOutcome.FAILURE
        assert run.results["test"].exit_code == 1
        assert run.results["deploy"].skip_reason == "upstream job failed"
        assert "deploy" not in runner.commands()

    def test_failed_build_skips_test_but_not_cleanup(self, ci_graph, make_runner) -> None:
        runner = make_runner(exit_codes={"build": 2})
        run = _execute(ci_graph, runner, concurrency=2)

        assert run.statuses() == {"build": F, "test": K, "cleanup": S, "deploy": K}
        assert run.results["test"].skip_reason
        assert "test" not in runner.commands()

    def test_skip_propagates_down_the_chain(self, make_runner) -> None:
        graph = wf(
            job("build", sh("b", "build")),
            job("test", sh("t", "test"), needs="build"),
            job("package", sh("p", "package"), needs="test"),
            job("publish", sh("u", "publish"), needs="package"),
        )
        run = _execute(graph, make_runner(exit_codes={"build": 1}), concurrency=4)
        assert run.statuses() == {"build": F, "test": K, "package": K, "publish": K}

    def test_on_failure_job(self, make_runner) -> None:
        graph = wf(
            job("build", sh("b", "build")),
            job("notify", sh("n", "notify"), needs="build", condition="on-failure"),
        )
        ok = _execute(graph, make_runner(), concurrency=2)
        assert ok.status("notify") == K
        assert ok.results["notify"].skip_reason == "no dependency failed"

        broken = _execute(graph, make_runner(exit_codes={"build": 1}), concurrency=2)
        assert broken.status("notify") == S

    def test_later_steps_not_run_after_failure(self, make_runner) -> None:
        graph = wf(job("build", sh("one", "one"), sh("two", "two"), sh("three", "three")))
        runner = make_runner(exit_codes={"two": 5})
        run = _execute(graph, runner, concurrency=1)

        assert runner.commands() == ["one", "two"]
        result = run.results["build"]
        assert [s.name for s in result.steps] == ["one", "two"]
        assert result.first_failure.name == "two"
        assert result.exit_code == 5


class TestOrderingAndConcurrency:
    def test_dependencies_finish_before_dependents_start(self, ci_graph, make_runner) -> None:
        run = _execute(ci_graph, make_runner(default_delay=0.02), concurrency=4)

        started = {e.job: i for i, e in enumerate(run.events) if e.status == JobStatus.RUNNING}
        finished = {e.job: i for i, e in enumerate(run.events) if e.status.terminal}
        for name in ci_graph.names:
            for dep in ci_graph.dependencies(name):
                assert finished[dep] < started[name]

    def test_concurrency_limit_respected(self, make_runner) -> None:
        graph = wf(*[job(f"j{i}", sh(f"s{i}", f"cmd{i}")) for i in range(6)])
        run = _execute(graph, make_runner(default_delay=0.05), concurrency=2)

        running = peak = 0
        for event in run.events:
            if event.status == JobStatus.RUNNING:
                running += 1
                peak = max(peak, running)
            elif event.status.terminal:
                running -= 1
        assert peak == 2
        assert all(s == S for s in run.statuses().values())

    def test_independent_jobs_overlap(self, make_runner) -> None:
        graph = wf(job("a", sh("a", "a")), job("b", sh("b", "b")))
        start = time.monotonic()
        _execute(graph, make_runner(default_delay=0.3), concurrency=2)
        assert time.monotonic() - start < 0.55

    def test_zero_concurrency_rejected(self, ci_graph, fake_runner) -> None:
        with pytest.raises(ValueError):
            Executor(Run(ci_graph), fake_runner, concurrency=0)

    def test_each_job_dispatched_once(self, ci_graph, fake_runner) -> None:
        run = _execute(ci_graph, fake_runner, concurrency=4)
        running = [e.job for e in run.events if e.status == JobStatus.RUNNING]
        assert sorted(running) == sorted(ci_graph.names)


class TestRetries:
    def test_retry_then_succeed(self, make_runner) -> None:
        class Flaky(make_runner):
            def run(self, step, timeout=None, cancel=None, env=None):
                result = super().run(step, timeout, cancel, env)
                self.exit_codes[step.command] = 0
                return result

        graph = wf(job("deploy", sh("push", "push"), max_retries=2))
        run = _execute(graph, Flaky(exit_codes={"push": 1}), concurrency=1)

        result = run.results["deploy"]
        assert result.status == S
        assert result.attempts == 2
        assert result.error is None

    def test_retries_exhausted(self, make_runner) -> None:
        graph = wf(job("deploy", sh("push", "push"), max_retries=1))
        runner = make_runner(exit_codes={"push": 3})
        run = _execute(graph, runner, concurrency=1)

        assert run.status("deploy") == F
        assert run.results["deploy"].attempts == 2
        assert runner.commands() == ["push", "push"]
        assert [env["STAGECI_ATTEMPT"] for _, _, env in runner.calls] == ["1", "2"]


class TestRuntimeLabels:
    def test_label_capacity_serializes_jobs(self, make_runner) -> None:
        graph = wf(
            job("a", sh("a", "a"), runs_on="gpu"),
            job("b", sh("b", "b"), runs_on="gpu"),
        )
        run = _execute(
            graph, make_runner(default_delay=0.05), concurrency=4, workers=WorkerPool({"gpu": 1})
        )
        assert run.statuses() == {"a": S, "b": S}
        kinds = [(e.job, e.status) for e in run.events if e.status in (JobStatus.RUNNING, S)]
        # the second job only starts once the first one released the slot
        assert kinds[1][1] == S

    def test_unadvertised_label_fails_immediately(self, make_runner) -> None:
        graph = wf(
            job("build", sh("b", "build"), runs_on="arm64"),
            job("cleanup", sh("c", "cleanup"), needs="build", condition="always", runs_on="x86"),
        )
        start = time.monotonic()
        run = _execute(
            graph, make_runner(), concurrency=2, workers=WorkerPool({"x86": 1}), scheduling_timeout=30
        )
        assert time.monotonic() - start < 5
        assert run.status("build") == F
        assert "arm64" in run.results["build"].error
        assert run.status("cleanup") == S

    def test_busy_label_times_out(self, make_runner) -> None:
        graph = wf(
            job("long", sh("l", "long"), runs_on="gpu"),
            job("short", sh("s", "short"), runs_on="gpu"),
        )
        runner = make_runner(delays={"long": 1.0})
        run = _execute(
            graph, runner, concurrency=2, workers=WorkerPool({"gpu": 1}), scheduling_timeout=0.1
        )
        assert run.status("long") == S
        assert run.status("short") == F
        assert "could not be scheduled" in run.results["short"].error
        assert "short" not in runner.commands()


class TestCancellation:
    def test_cancel_kills_running_and_skips_pending(self, ci_graph, make_runner) -> None:
        runner = make_runner(delays={"build": 5.0})
        run = Run(ci_graph)
        executor = Executor(run, runner, concurrency=2)
        threading.Timer(0.2, executor.cancel).start()

        start = time.monotonic()
        executor.execute()
        assert time.monotonic() - start < 4
        assert executor.cancelled
        assert all(s == K for s in run.statuses().values())
        assert all(r.skip_reason == "cancelled" for r in run.results.values())
        assert runner.commands() == ["build"]

    def test_finished_jobs_keep_their_status(self, make_runner) -> None:
        graph = wf(
            job("fast", sh("f", "fast")),
            job("slow", sh("s", "slow")),
            job("after", sh("a", "after"), needs="slow"),
        )
        run = Run(graph)
        executor = Executor(run, make_runner(delays={"slow": 5.0}), concurrency=2)
        threading.Timer(0.3, executor.cancel).start()
        executor.execute()

        assert run.status("fast") == S
        assert run.results["fast"].skip_reason is None
        assert run.report().job("fast").to_dict()["skip_reason"] is None
        assert run.status("slow") == K
        assert run.results["slow"].skip_reason == "cancelled"
        assert run.status("after") == K
        assert run.results["after"].skip_reason == "cancelled"

    def test_real_failure_during_cancel_stays_failed(self, make_runner) -> None:
        graph = wf(job("test", sh("t", "test")), job("deploy", sh("d", "deploy"), needs="test"))
        run = Run(graph)
        holder = {}

        class CancelThenFail(make_runner):
            def run(self, step, timeout=None, cancel=None, env=None):
                result = super().run(step, timeout, cancel, env)
                # the step ended on its own; the cancel lands before the job is finalized
                holder["executor"].cancel()
                return result

        executor = Executor(run, CancelThenFail(exit_codes={"test": 1}), concurrency=1)
        holder["executor"] = executor
        executor.execute()

        assert run.status("test") == F
        assert run.results["test"].skip_reason is None
        assert run.results["test"].exit_code == 1
        assert run.status("deploy") == K
        assert run.outcome == RunOutcome.FAILURE

    def test_no_retry_after_cancel(self, make_runner) -> None:
        graph = wf(job("push", sh("p", "push"), max_retries=3))
        run = Run(graph)
        holder = {}

        class CancelThenFail(make_runner):
            def run(self, step, timeout=None, cancel=None, env=None):
                result = super().run(step, timeout, cancel, env)
                holder["executor"].cancel()
                return result

        runner = CancelThenFail(exit_codes={"push": 1})
        executor = Executor(run, runner, concurrency=1)
        holder["executor"] = executor
        executor.execute()

        assert run.status("push") == F
        assert run.results["push"].attempts == 1
        assert runner.commands() == ["push"]


def test_run_scoped_env(fake_runner) -> None:
    graph = wf(job("build", sh("b", "build")))
    _execute(graph, fake_runner, concurrency=1)
    _, _, env = fake_runner.calls[0]
    assert env == {"STAGECI_RUN_ID": "test-run", "STAGECI_JOB": "build", "STAGECI_ATTEMPT": "1"}
