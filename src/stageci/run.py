# run.py
from __future__ import annotations

import json
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from .dag import JobGraph
from .model import JobResult, JobStatus, RunOutcome


class Transition(NamedTuple):
    at: float          # time.monotonic()
    job: str
    status: JobStatus


class Run:
    """
    One execution of a JobGraph.

    Owns the per-job status map and results. Each job has its own lock and
    every status write is a compare-and-set on that job only, so the main
    loop and the job's worker never need a cross-job lock.
    """

    def __init__(self, graph: JobGraph, run_id: str | None = None):
        if not graph.validated:
            graph.validate()
        self.graph = graph
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.created_at = time.time()
        self._status: Dict[str, JobStatus] = {n: JobStatus.PENDING for n in graph.names}
        self._locks: Dict[str, threading.Lock] = {n: threading.Lock() for n in graph.names}
        self.results: Dict[str, JobResult] = {n: JobResult(name=n) for n in graph.names}
        self.events: List[Transition] = []
        self._events_lock = threading.Lock()

    def status(self, name: str) -> JobStatus:
        return self._status[name]

    def statuses(self) -> Dict[str, JobStatus]:
        return dict(self._status)

    def transition(self, name: str, new: JobStatus, *, expect: tuple[JobStatus, ...] | None = None) -> bool:
        """
        Set `name` to `new` if its current status is in `expect` (any non-terminal
        status when omitted). Returns False and leaves the status alone otherwise.
        """
        with self._locks[name]:
            current = self._status[name]
            if expect is None:
                if current.terminal:
                    return False
            elif current not in expect:
                return False
            self._status[name] = new
            result = self.results[name]
            result.status = new
            if new == JobStatus.RUNNING and result.started_at is None:
                result.started_at = time.time()
            if new.terminal:
                result.finished_at = time.time()
        with self._events_lock:
            self.events.append(Transition(time.monotonic(), name, new))
        return True

    @property
    def finished(self) -> bool:
        return all(s.terminal for s in self._status.values())

    @property
    def outcome(self) -> RunOutcome:
        if any(s == JobStatus.FAILED for s in self._status.values()):
            return RunOutcome.FAILURE
        return RunOutcome.SUCCESS

    def report(self) -> RunReport:
        return RunReport(
            run_id=self.run_id,
            pipeline=self.graph.name,
            outcome=self.outcome,
            jobs=[self.results[n] for n in self.graph.names],
        )


# ----------------------------------------------------------------------
# Report (what the CLI prints and optionally writes to disk)
# ----------------------------------------------------------------------

@dataclass
class RunReport:
    run_id: str
    pipeline: str
    outcome: RunOutcome
    jobs: List[JobResult] = field(default_factory=list)

    def job(self, name: str) -> JobResult:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def statuses(self) -> Dict[str, JobStatus]:
        return {j.name: j.status for j in self.jobs}

    @property
    def exit_codes(self) -> Dict[str, Optional[int]]:
        return {j.name: j.exit_code for j in self.jobs}

    @property
    def success(self) -> bool:
        return self.outcome == RunOutcome.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "outcome": self.outcome.value,
            "jobs": [j.to_dict() for j in self.jobs],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RunReport:
        return cls(
            run_id=data["run_id"],
            pipeline=data.get("pipeline", "pipeline"),
            outcome=RunOutcome(data["outcome"]),
            jobs=[JobResult.from_dict(j) for j in data.get("jobs", [])],
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, text: str) -> RunReport:
        return cls.from_dict(json.loads(text))

    def write(self, path: str | Path) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(self.to_json(), encoding="utf-8")
        return p

    @classmethod
    def load(cls, path: str | Path) -> RunReport:
        return cls.from_json(Path(path).read_text(encoding="utf-8"))
