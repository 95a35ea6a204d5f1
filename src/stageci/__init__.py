from .dsl import job, sh, wf
from .dag import JobGraph, build_graph
from .model import Job, JobStatus, RunCondition, Step
from .controller import PipelineController
from .config import load_pipeline

__all__ = [
    "job",
    "sh",
    "wf",
    "JobGraph",
    "build_graph",
    "Job",
    "JobStatus",
    "RunCondition",
    "Step",
    "PipelineController",
    "load_pipeline",
]
