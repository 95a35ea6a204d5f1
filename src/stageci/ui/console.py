"""Console output formatting utilities for stageci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

from .. import settings
from ..model import JobResult, JobStatus

if TYPE_CHECKING:
    from ..dag import JobGraph
    from ..run import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only print the final results and errors
        """
        self.debug = debug
        self.quiet = quiet
        # jobs print from pool threads; keep multi-line blocks together
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        config: str,
        job_count: int,
        concurrency: int,
    ) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._emit(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Config: {config}",
            f"Jobs: {job_count}",
            f"Concurrency: {concurrency}",
            "",
        )

    def print_plan(self, graph: JobGraph, levels: List[List[str]]) -> None:
        """Print the dry-run execution plan, one stage per topological level."""
        self.print_header(f"PLAN: {graph.name}")
        for idx, level in enumerate(levels, start=1):
            self._emit(f"Stage {idx}:")
            for name in level:
                job = graph.job(name)
                needs = f" needs={list(job.needs)}" if job.needs else ""
                self._emit(f"  {name} [{job.condition.value}, runs-on={job.runtime_label}]{needs}")
                for step in job.steps:
                    self._emit(f"    - {step.name}: {step.command}")

    def print_job_start(self, name: str, label: str) -> None:
        """Print job start message."""
        if self.quiet:
            return
        self._emit(f"[{name}] JOB STARTED (runs-on={label})")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        if self.quiet:
            return
        self._emit(f"[{job}] STEP: {name}")

    def print_job_finished(self, result: JobResult) -> None:
        """Print a job's terminal status, with the stderr tail on failure."""
        if self.quiet:
            return
        lines = [f"[{result.name}] STATUS: {result.status.value}"]
        if result.status == JobStatus.FAILED:
            failure = result.first_failure
            if failure is not None:
                lines.append(f"[{result.name}] STEP FAILED: {failure.name} (exit code {failure.exit_code})")
            elif result.error:
                lines.append(f"[{result.name}] Error: {result.error}")
        self._emit(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        if self.quiet:
            return
        self._emit(f"[{name}] STATUS: skipped ({reason})")

    def print_results(self, report: RunReport) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, f"RESULTS ({report.pipeline}, run {report.run_id})", "=" * 40]
        for job in report.jobs:
            detail = ""
            if job.status == JobStatus.SKIPPED and job.skip_reason:
                detail = f" ({job.skip_reason})"
            elif job.status == JobStatus.FAILED and job.exit_code is not None:
                detail = f" (exit code {job.exit_code})"
            lines.append(f"  {job.name}: {job.status.value.upper()}{detail}")
            if job.status == JobStatus.FAILED:
                tail = job.stderr_tail(settings.STDERR_TAIL_LINES)
                if tail:
                    lines.extend(f"      | {line}" for line in tail.splitlines())
                elif job.error and job.first_failure is None:
                    lines.append(f"      | {job.error}")
        lines.append("")
        lines.append(f"OUTCOME: {report.outcome.value.upper()}")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        if self.quiet:
            return
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
