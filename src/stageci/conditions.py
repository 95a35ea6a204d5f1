"""Run-condition evaluation: does a job run, given how its dependencies ended?"""
from __future__ import annotations

from typing import Iterable, NamedTuple

from .model import JobStatus, RunCondition


class Decision(NamedTuple):
    eligible: bool
    reason: str


def evaluate(
    condition: RunCondition,
    dependency_statuses: Iterable[JobStatus],
    upstream_failed: bool = False,
) -> Decision:
    """
    Decide whether a job is eligible to run.

    Only called once every direct dependency is terminal; a job never sees a
    partially resolved dependency set. `upstream_failed` is True when any job
    further up the chain failed, even if the direct dependencies ran (an
    ``always`` cleanup between a failed test and a deploy does not make the
    deploy eligible).

    Raises:
      ValueError: a dependency status is not terminal
    """
    statuses = list(dependency_statuses)
    pending = [s for s in statuses if not s.terminal]
    if pending:
        raise ValueError(f"Cannot evaluate {condition.value!r}: dependencies not terminal ({pending[0].value})")

    if condition == RunCondition.ALWAYS:
        return Decision(True, "always")

    if condition == RunCondition.ON_SUCCESS:
        if not all(s == JobStatus.SUCCEEDED for s in statuses):
            bad = sorted({s.value for s in statuses if s != JobStatus.SUCCEEDED})
            return Decision(False, f"dependency {'/'.join(bad)}")
        if upstream_failed:
            return Decision(False, "upstream job failed")
        return Decision(True, "all dependencies succeeded")

    if condition == RunCondition.ON_FAILURE:
        if any(s == JobStatus.FAILED for s in statuses) or upstream_failed:
            return Decision(True, "a dependency failed")
        return Decision(False, "no dependency failed")

    raise ValueError(f"Unknown run condition: {condition!r}")
