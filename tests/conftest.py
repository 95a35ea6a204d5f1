"""Shared pytest fixtures for the stageci test suite."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import pytest

from stageci.dsl import job, sh, wf
from stageci.model import Step, StepOutcome, StepResult
from stageci.ui.console import Console, set_console

# pylint: disable=redefined-outer-name


@dataclass
class FakeRunner:
    """
    Scripted stand-in for CommandRunner.

    `exit_codes` maps a command string to its exit code (default 0);
    `delays` maps a command string to how long it "runs". A set cancel event
    ends the delay early with a cancelled outcome, like a killed process.
    """
    exit_codes: Dict[str, int] = field(default_factory=dict)
    delays: Dict[str, float] = field(default_factory=dict)
    default_delay: float = 0.0
    calls: List[Tuple[float, str, Dict[str, str]]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def run(
        self,
        step: Step,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> StepResult:
        with self._lock:
            self.calls.append((time.monotonic(), step.command, dict(env or {})))

        delay = self.delays.get(step.command, self.default_delay)
        if delay:
            if cancel is not None and cancel.wait(delay):
                return StepResult(step.name, step.command, 130, outcome=StepOutcome.CANCELLED)

        rc = self.exit_codes.get(step.command, 0)
        return StepResult(
            name=step.name,
            command=step.command,
            exit_code=rc,
            stdout=f"ran {step.command}\n",
            stderr="" if rc == 0 else f"{step.command} exploded\nexit {rc}\n",
            outcome=StepOutcome.SUCCEEDED if rc == 0 else StepOutcome.FAILED,
        )

    def commands(self) -> List[str]:
        return [c for _, c, _ in self.calls]


@pytest.fixture(autouse=True)
def quiet_console() -> Console:
    """Keep job chatter out of test output."""
    console = Console(quiet=True)
    set_console(console)
    return console


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def ci_graph():
    """build -> test -> cleanup (always) -> deploy, the shape of the demo pipeline."""
    return wf(
        job("build", sh("Build image", "build")),
        job("test", sh("Smoke test", "test"), needs="build"),
        job("cleanup", sh("Remove container", "cleanup"), needs="test", condition="always"),
        job("deploy", sh("Deploy", "deploy"), needs="cleanup"),
        name="python-app",
    )


@pytest.fixture
def make_runner():
    """The FakeRunner class, for tests that script exit codes or delays."""
    return FakeRunner
