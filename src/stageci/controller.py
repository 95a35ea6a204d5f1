# controller.py
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

from .command import CommandRunner
from .config import Pipeline, load_pipeline
from .executor import Executor, StepRunner, default_concurrency
from .run import Run, RunReport
from .ui.console import Console, get_console
from .workers import WorkerPool

logger = logging.getLogger(__name__)


class PipelineController:
    """
    Ties a loaded pipeline to one Run: builds the executor, drives it until
    every job is terminal and hands back the report.

    Configuration errors surface from `from_file` / the Pipeline itself,
    before anything runs.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        runner: StepRunner | None = None,
        workspace: Union[str, Path] = ".",
        concurrency: int | None = None,
        workers: Optional[Dict[str, int]] = None,
        default_timeout: float | None = None,
        scheduling_timeout: float | None = None,
        console: Console | None = None,
    ):
        self.pipeline = pipeline
        self.runner = runner or CommandRunner(workspace)
        self.concurrency = concurrency or default_concurrency()
        self.workers = workers if workers is not None else pipeline.workers
        self.default_timeout = default_timeout
        self.scheduling_timeout = scheduling_timeout if scheduling_timeout is not None else pipeline.scheduling_timeout
        self.console = console or get_console()

        self._lock = threading.Lock()
        self._executor: Optional[Executor] = None
        self._aborted = False
        self.interrupted = False

    @classmethod
    def from_file(cls, path: Union[str, Path], **options) -> PipelineController:
        return cls(load_pipeline(path), **options)

    @property
    def graph(self):
        return self.pipeline.graph

    def plan(self) -> List[List[str]]:
        return self.pipeline.graph.topo_levels()

    def run(self, run_id: str | None = None) -> RunReport:
        run = Run(self.pipeline.graph, run_id=run_id)
        executor = Executor(
            run,
            self.runner,
            concurrency=self.concurrency,
            workers=WorkerPool(self.workers),
            default_timeout=self.default_timeout,
            scheduling_timeout=self.scheduling_timeout,
            console=self.console,
        )
        with self._lock:
            self._executor = executor
            if self._aborted:
                executor.cancel()

        logger.info("pipeline %r run %s started", self.pipeline.name, run.run_id)
        try:
            executor.execute()
        finally:
            with self._lock:
                self._executor = None
        self.interrupted = executor.interrupted

        report = run.report()
        logger.info("pipeline %r run %s finished: %s", self.pipeline.name, run.run_id, report.outcome.value)
        return report

    def abort(self) -> None:
        """Cancel the active run: running jobs are killed, the rest are skipped."""
        with self._lock:
            self._aborted = True
            if self._executor is not None:
                self._executor.cancel()
