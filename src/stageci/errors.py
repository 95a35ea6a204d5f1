"""
Error taxonomy for stageci.

    StageCIError
        ConfigurationError (also ValueError; fatal, raised before any job runs)
            DuplicateJobError
            DanglingDependencyError
            CycleDetectedError
        StepFailure (local to one job, becomes its `failed` status)
        RuntimeUnavailable (no free worker slot for a runtime label)
        SchedulingTimeoutError (no slot freed up within the bound)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


class StageCIError(Exception):
    """Base class for every error raised by stageci."""


class ConfigurationError(StageCIError, ValueError):
    """The pipeline definition is invalid."""


@dataclass(eq=False)
class DuplicateJobError(ConfigurationError):
    job: str

    def __str__(self) -> str:
        return f"Duplicate job name: {self.job}"


@dataclass(eq=False)
class DanglingDependencyError(ConfigurationError):
    job: str
    dependency: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        msg = f"Job '{self.job}' depends on missing job '{self.dependency}'"
        if self.known:
            msg += f". Known jobs: {self.known}"
        return msg


@dataclass(eq=False)
class CycleDetectedError(ConfigurationError):
    """`cycle` lists the members in dependency order, e.g. ['a', 'b', 'c'] for a -> b -> c -> a."""
    cycle: List[str]

    def __str__(self) -> str:
        path = " -> ".join(self.cycle + self.cycle[:1])
        return f"Dependency cycle detected: {path}"


@dataclass(eq=False)
class StepFailure(StageCIError):
    job: str
    step: str
    command: str
    exit_code: int
    outcome: str = "failed"

    def __str__(self) -> str:
        if self.outcome == "timed-out":
            return f"[{self.job}] step '{self.step}' timed out: {self.command}"
        if self.outcome == "cancelled":
            return f"[{self.job}] step '{self.step}' was cancelled: {self.command}"
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.command}"


@dataclass(eq=False)
class RuntimeUnavailable(StageCIError):
    label: str

    def __str__(self) -> str:
        return f"No free worker for runtime label '{self.label}'"


@dataclass(eq=False)
class SchedulingTimeoutError(StageCIError):
    job: str
    label: str
    waited: float

    def __str__(self) -> str:
        return (
            f"Job '{self.job}' could not be scheduled: no worker for runtime label "
            f"'{self.label}' became available within {self.waited:.1f}s"
        )
