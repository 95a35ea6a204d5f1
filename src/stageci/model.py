# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from . import settings


class RunCondition(str, Enum):
    """When a job runs, given the terminal statuses of its dependencies."""
    ON_SUCCESS = "on-success"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"


class JobStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


class StepOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed-out"
    CANCELLED = "cancelled"


class RunOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a job."""
    name: str
    command: str
    workdir: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout: float | None = None


@dataclass(frozen=True)
class Job:
    """
    A pipeline job: ordered steps + dependencies + scheduling metadata.

    The job definition never changes during a run; its status lives in the Run.
    """
    name: str
    steps: tuple[Step, ...]
    needs: tuple[str, ...] = ()
    condition: RunCondition = RunCondition.ON_SUCCESS
    runtime_label: str = settings.DEFAULT_LABEL
    env: Dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    max_retries: int = 0


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    outcome: StepOutcome = StepOutcome.SUCCEEDED

    @property
    def ok(self) -> bool:
        return self.outcome == StepOutcome.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
            "outcome": self.outcome.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StepResult:
        return cls(
            name=data["name"],
            command=data.get("command", ""),
            exit_code=data["exit_code"],
            stdout=data.get("stdout", ""),
            stderr=data.get("stderr", ""),
            duration_ms=data.get("duration_ms", 0),
            outcome=StepOutcome(data.get("outcome", StepOutcome.SUCCEEDED.value)),
        )


@dataclass
class JobResult:
    """Everything a Run knows about one job once it is terminal."""
    name: str
    status: JobStatus = JobStatus.PENDING
    steps: List[StepResult] = field(default_factory=list)
    attempts: int = 0
    error: Optional[str] = None
    skip_reason: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def first_failure(self) -> Optional[StepResult]:
        for step in self.steps:
            if not step.ok:
                return step
        return None

    @property
    def exit_code(self) -> Optional[int]:
        """0 on success, the failing step's code on failure, None if no step ran."""
        failure = self.first_failure
        if failure is not None:
            return failure.exit_code
        if self.status == JobStatus.SUCCEEDED:
            return 0
        return None

    def stderr_tail(self, lines: int = 10) -> str:
        failure = self.first_failure
        if failure is None or not failure.stderr:
            return ""
        return "\n".join(failure.stderr.rstrip().splitlines()[-lines:])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "attempts": self.attempts,
            "error": self.error,
            "skip_reason": self.skip_reason,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobResult:
        return cls(
            name=data["name"],
            status=JobStatus(data["status"]),
            steps=[StepResult.from_dict(s) for s in data.get("steps", [])],
            attempts=data.get("attempts", 0),
            error=data.get("error"),
            skip_reason=data.get("skip_reason"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
        )
