# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Union

from . import settings
from .dag import JobGraph, build_graph
from .model import Job, RunCondition, Step


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, command=cmd, workdir=cwd, env=dict(env or {}), timeout=timeout)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    needs: Union[str, Iterable[str], None] = None,
    condition: Union[RunCondition, str] = RunCondition.ON_SUCCESS,
    runs_on: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    max_retries: int = 0,
    cwd: str | None = None,  # default cwd applied to steps missing one
) -> Job:
    if not steps:
        raise ValueError(f"job({name!r}) must have at least one step")

    steps_final: List[Step] = list(steps)
    if cwd is not None:
        steps_final = [s if s.workdir is not None else replace(s, workdir=cwd) for s in steps_final]
    if env:
        # job env sits under each step's own overrides
        steps_final = [replace(s, env={**env, **s.env}) for s in steps_final]

    if isinstance(needs, str):
        needs = [needs]

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        condition=RunCondition(condition),
        runtime_label=runs_on or settings.DEFAULT_LABEL,
        env=dict(env or {}),
        timeout=timeout,
        max_retries=max_retries,
    )


# ---------------------------------------------------------------------
# Workflow helper
# ---------------------------------------------------------------------

def wf(*jobs: Job, name: str = "pipeline") -> JobGraph:
    """
    Build and validate a graph in one call:

        from stageci import wf, job, sh

        graph = wf(
            job("build", sh("Build image", "docker build -t app .")),
            job("test", sh("Smoke test", "curl -f localhost:4000"), needs="build"),
            name="python-app",
        )
    """
    return build_graph(jobs, name=name)
