# executor.py
from __future__ import annotations

import logging
import os
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Protocol

from . import settings
from .command import CommandRunner
from .conditions import evaluate
from .errors import RuntimeUnavailable, SchedulingTimeoutError, StepFailure
from .model import Job, JobStatus, Step, StepOutcome, StepResult
from .run import Run
from .ui.console import Console, get_console
from .workers import WorkerPool

logger = logging.getLogger(__name__)

# Wakes the scheduling loop without a job having completed
_WAKE = object()


def default_concurrency() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class StepRunner(Protocol):
    def run(
        self,
        step: Step,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
        env: Dict[str, str] | None = None,
    ) -> StepResult: ...


class Executor:
    """
    Dispatch loop over a thread pool.

    Jobs go pending -> ready -> running -> succeeded | failed | skipped. The
    loop only ever blocks on the completion queue; a job finishing (or a
    cancel) is what wakes it, and the only readiness check after startup is
    on the direct dependents of the job that just became terminal.
    """

    def __init__(
        self,
        run: Run,
        runner: StepRunner | None = None,
        *,
        concurrency: int | None = None,
        workers: WorkerPool | None = None,
        default_timeout: float | None = None,
        scheduling_timeout: float | None = None,
        console: Console | None = None,
    ):
        if concurrency is None:
            concurrency = default_concurrency()
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        self.run = run
        self.graph = run.graph
        self.runner = runner or CommandRunner()
        self.concurrency = concurrency
        self.workers = workers or WorkerPool()
        self.default_timeout = default_timeout
        self.scheduling_timeout = settings.SCHEDULING_TIMEOUT if scheduling_timeout is None else scheduling_timeout
        self.console = console or get_console()

        self.interrupted = False
        self._cancel = threading.Event()
        self._completed: "queue.Queue[object]" = queue.Queue()
        self._ready: List[str] = []
        self._waiting_since: Dict[str, float] = {}
        self._in_flight: Dict[str, str] = {}  # job -> label of the slot it holds

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Kill in-flight commands and skip everything not yet dispatched."""
        if self._cancel.is_set():
            return
        logger.info("run %s: cancel requested", self.run.run_id)
        self._cancel.set()
        self._completed.put(_WAKE)

    def execute(self) -> Run:
        logger.debug(
            "run %s: %d jobs, concurrency=%d", self.run.run_id, len(self.graph), self.concurrency
        )
        for job in self.graph.ready_jobs(self.run):
            self._promote(job.name)

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="stageci") as pool:
            while not self.run.finished:
                try:
                    self._tick(pool)
                except KeyboardInterrupt:
                    # first Ctrl-C cancels and drains; a second one propagates
                    if self._cancel.is_set():
                        raise
                    self.interrupted = True
                    self.cancel()

        return self.run

    def _tick(self, pool: ThreadPoolExecutor) -> None:
        if self._cancel.is_set():
            self._skip_undispatched()
        else:
            self._dispatch(pool)

        if self.run.finished:
            return
        if not self._in_flight and not self._ready and not self._cancel.is_set():
            # nothing runnable and nothing running: unreachable for a validated graph
            stuck = [n for n, s in self.run.statuses().items() if not s.terminal]
            raise RuntimeError(f"scheduler stalled with non-terminal jobs: {stuck}")
        if self._cancel.is_set() and not self._in_flight:
            return

        try:
            event = self._completed.get(timeout=self._next_deadline())
        except queue.Empty:
            return
        if event is not _WAKE:
            self._on_terminal(str(event))

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _promote(self, name: str) -> None:
        """
        All dependencies of `name` are terminal: run the condition check and
        either queue the job or skip it (and keep propagating).
        """
        worklist = [name]
        while worklist:
            current = worklist.pop(0)
            if self.run.status(current) != JobStatus.PENDING:
                continue
            job = self.graph.job(current)
            upstream_failed = any(
                self.run.status(a) == JobStatus.FAILED for a in self.graph.ancestors(current)
            )
            decision = evaluate(job.condition, [self.run.status(d) for d in job.needs], upstream_failed)
            if decision.eligible:
                self.run.transition(current, JobStatus.READY, expect=(JobStatus.PENDING,))
                self._ready.append(current)
                continue

            self.run.results[current].skip_reason = decision.reason
            if self.run.transition(current, JobStatus.SKIPPED, expect=(JobStatus.PENDING,)):
                self.console.print_job_skipped(current, decision.reason)
                worklist.extend(self._newly_ready(current))

    def _newly_ready(self, name: str) -> List[str]:
        return [
            dep
            for dep in self.graph.dependents(name)
            if self.run.status(dep) == JobStatus.PENDING and self.graph.dependencies_terminal(dep, self.run)
        ]

    def _dispatch(self, pool: ThreadPoolExecutor) -> None:
        for name in list(self._ready):
            if len(self._in_flight) >= self.concurrency:
                return
            job = self.graph.job(name)
            try:
                self.workers.acquire(job.runtime_label)
            except RuntimeUnavailable as e:
                self._hold(job, e)
                continue

            self._ready.remove(name)
            self._waiting_since.pop(name, None)
            self._in_flight[name] = job.runtime_label
            self.run.transition(name, JobStatus.RUNNING, expect=(JobStatus.READY,))
            pool.submit(self._run_job, job)

    def _hold(self, job: Job, reason: RuntimeUnavailable) -> None:
        """Keep a job ready until its label frees up, or fail it once the wait bound passes."""
        now = time.monotonic()
        since = self._waiting_since.setdefault(job.name, now)
        if since == now:
            logger.debug("job %s waiting: %s", job.name, reason)

        # a label nobody advertises can never get a slot
        hopeless = not self.workers.advertises(job.runtime_label)
        if not hopeless and now - since < self.scheduling_timeout:
            return

        err = SchedulingTimeoutError(job.name, job.runtime_label, now - since)
        logger.warning("%s", err)
        self._ready.remove(job.name)
        self._waiting_since.pop(job.name, None)
        self.run.results[job.name].error = str(err)
        if self.run.transition(job.name, JobStatus.FAILED, expect=(JobStatus.READY,)):
            self.console.print_job_finished(self.run.results[job.name])
            for dep in self._newly_ready(job.name):
                self._promote(dep)

    def _next_deadline(self) -> Optional[float]:
        # a full pool can only change on a completion event
        if not self._waiting_since or len(self._in_flight) >= self.concurrency:
            return None
        now = time.monotonic()
        earliest = min(self._waiting_since.values()) + self.scheduling_timeout
        return max(0.0, earliest - now)

    def _on_terminal(self, name: str) -> None:
        label = self._in_flight.pop(name, None)
        if label is not None:
            self.workers.release(label)
        for dep in self._newly_ready(name):
            self._promote(dep)

    def _skip_undispatched(self) -> None:
        self._ready.clear()
        self._waiting_since.clear()
        for name in self.graph.names:
            if self.run.transition(name, JobStatus.SKIPPED, expect=(JobStatus.PENDING, JobStatus.READY)):
                self.run.results[name].skip_reason = "cancelled"
                logger.debug("job %s skipped: cancelled", name)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _run_job(self, job: Job) -> None:
        """Runs on a pool thread. Writes only this job's terminal status, then reports back."""
        result = self.run.results[job.name]
        status = JobStatus.FAILED
        try:
            self.console.print_job_start(job.name, job.runtime_label)
            for attempt in range(job.max_retries + 1):
                result.attempts = attempt + 1
                try:
                    result.steps = self._run_steps(job, attempt + 1)
                    result.error = None
                    status = JobStatus.SUCCEEDED
                    break
                except StepFailure as e:
                    result.error = str(e)
                    if e.outcome == StepOutcome.CANCELLED.value:
                        status = JobStatus.SKIPPED
                        result.skip_reason = "cancelled"
                        break
                    if self._cancel.is_set():
                        # ran and failed; no retry after a cancel
                        break
                    if attempt < job.max_retries:
                        logger.info("job %s failed (attempt %d/%d), retrying", job.name, attempt + 1, job.max_retries + 1)
                        self.console.print_info(f"[{job.name}] retrying ({attempt + 2}/{job.max_retries + 1})")
        except Exception as e:
            logger.exception("job %s crashed", job.name)
            result.error = f"{type(e).__name__}: {e}"
            status = JobStatus.FAILED
        finally:
            self.run.transition(job.name, status, expect=(JobStatus.RUNNING,))
            self.console.print_job_finished(result)
            self._completed.put(job.name)

    def _run_steps(self, job: Job, attempt: int) -> List[StepResult]:
        env = {
            "STAGECI_RUN_ID": self.run.run_id,
            "STAGECI_JOB": job.name,
            "STAGECI_ATTEMPT": str(attempt),
        }
        timeout = job.timeout or self.default_timeout
        results: List[StepResult] = []
        # published per step so a failed attempt keeps its results
        for step in job.steps:
            if self._cancel.is_set():
                raise StepFailure(job.name, step.name, step.command, 130, StepOutcome.CANCELLED.value)
            self.console.print_step(job.name, step.name)
            res = self.runner.run(step, timeout=timeout, cancel=self._cancel, env=env)
            results.append(res)
            self.run.results[job.name].steps = results
            if not res.ok:
                raise StepFailure(job.name, step.name, step.command, res.exit_code, res.outcome.value)
        return results
