# command.py
"""
Command Runner: the only place stageci touches the shell / container runtime.

Every command runs with ``shell=True`` in its own process group so that a
timeout or cancellation can kill the whole tree (``docker run``, ``sleep``,
pipes...). Output is always captured, never streamed to the shared terminal,
so logs stay attributable to one job.
"""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Dict, Mapping, Optional

from . import settings
from .model import Step, StepOutcome, StepResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
CANNOT_EXECUTE_EXIT_CODE = 126
NOT_FOUND_EXIT_CODE = 127
CANCELLED_EXIT_CODE = 130

# How often a waiting worker checks its cancel event
_POLL_SECONDS = 0.05

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "git": "Install Git or fix PATH.",
    "curl": "Install curl or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "python3": "Install Python 3 or fix PATH (python3).",
}


@dataclass(frozen=True)
class CommandOutput:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    outcome: StepOutcome


def _tool_hint(command_line: str, stderr: str) -> Optional[str]:
    if "not found" not in stderr:
        return None
    for tool, hint in TOOL_HINTS.items():
        if tool in command_line.split():
            return hint
    return None


def _kill_tree(proc: subprocess.Popen) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        # already gone
        pass


class CommandRunner:
    """
    Execute steps and report them as StepResults.

    Never raises for a failing command: the exit code (and outcome) carry the
    failure so the executor can apply run-conditions uniformly.
    """

    def __init__(self, workspace: str | Path = ".", *, inherit_env: bool = True):
        self.workspace = Path(workspace).resolve()
        self.inherit_env = inherit_env

    def execute(
        self,
        command_line: str,
        workdir: str | Path | None,
        env: Mapping[str, str] | None,
        timeout_seconds: float | None,
        cancel: threading.Event | None = None,
    ) -> CommandOutput:
        full_env: Dict[str, str] = dict(os.environ) if self.inherit_env else {}
        full_env.update(env or {})

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                command_line,
                shell=True,
                cwd=str(workdir) if workdir is not None else None,
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError as e:
            return CommandOutput(NOT_FOUND_EXIT_CODE, "", str(e), _elapsed_ms(start), StepOutcome.FAILED)
        except OSError as e:
            return CommandOutput(CANNOT_EXECUTE_EXIT_CODE, "", str(e), _elapsed_ms(start), StepOutcome.FAILED)

        deadline = start + timeout_seconds if timeout_seconds else None
        outcome: Optional[StepOutcome] = None

        while True:
            wait_for = _POLL_SECONDS
            if deadline is not None:
                wait_for = max(0.0, min(wait_for, deadline - time.monotonic()))
            try:
                stdout, stderr = proc.communicate(timeout=wait_for)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    outcome = StepOutcome.CANCELLED
                elif deadline is not None and time.monotonic() >= deadline:
                    outcome = StepOutcome.TIMED_OUT
                else:
                    continue
                _kill_tree(proc)
                stdout, stderr = proc.communicate()
                break

        duration_ms = _elapsed_ms(start)

        if outcome == StepOutcome.TIMED_OUT:
            logger.warning("command timed out after %.1fs: %s", timeout_seconds, command_line)
            stderr = (stderr or "") + f"\nTimed out after {timeout_seconds}s"
            return CommandOutput(TIMEOUT_EXIT_CODE, stdout or "", stderr, duration_ms, outcome)
        if outcome == StepOutcome.CANCELLED:
            logger.info("command cancelled: %s", command_line)
            return CommandOutput(CANCELLED_EXIT_CODE, stdout or "", stderr or "", duration_ms, outcome)

        rc = proc.returncode
        if rc != 0:
            hint = _tool_hint(command_line, stderr or "")
            if hint:
                stderr = (stderr or "") + f"\nHint: {hint}"
            logger.debug("command exited rc=%d: %s", rc, command_line)
        return CommandOutput(
            rc,
            stdout or "",
            stderr or "",
            duration_ms,
            StepOutcome.SUCCEEDED if rc == 0 else StepOutcome.FAILED,
        )

    def run(
        self,
        step: Step,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
        env: Mapping[str, str] | None = None,
    ) -> StepResult:
        """
        Run one step. The step's own timeout wins over `timeout`; the global
        default applies when neither is set. `env` holds run-scoped variables,
        layered under the step's own overrides.
        """
        cwd = (self.workspace / (step.workdir or ".")).resolve()
        if not cwd.is_dir():
            return StepResult(
                name=step.name,
                command=step.command,
                exit_code=NOT_FOUND_EXIT_CODE,
                stderr=f"step '{step.name}' workdir not found: {cwd}",
                outcome=StepOutcome.FAILED,
            )

        effective_timeout = step.timeout or timeout or settings.DEFAULT_STEP_TIMEOUT
        merged_env = _merge_env(env or {}, step.env)

        logger.debug("step %r: %s (cwd=%s, timeout=%s)", step.name, step.command, cwd, effective_timeout)
        out = self.execute(step.command, cwd, merged_env, effective_timeout, cancel)
        return StepResult(
            name=step.name,
            command=step.command,
            exit_code=out.exit_code,
            stdout=out.stdout,
            stderr=out.stderr,
            duration_ms=out.duration_ms,
            outcome=out.outcome,
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _merge_env(run_env: Mapping[str, str], step_env: Mapping[str, str]) -> Dict[str, str]:
    """Step overrides win; their values may reference run variables (${STAGECI_RUN_ID}), $$ is a literal $."""
    lookup = {**os.environ, **run_env, **step_env}
    merged = dict(run_env)
    for key, value in step_env.items():
        merged[key] = Template(value).safe_substitute(lookup)
    return merged
