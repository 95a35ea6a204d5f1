# config.py
"""
Pipeline document loading.

The document is YAML (JSON works too) in one of two shapes:

    name: python-app
    env: {IMAGE_NAME: python-app}
    workers: {self-hosted: 2}
    schedulingTimeout: 60
    jobs:
      build: {...}

or just the ``jobs`` mapping on its own (job name -> job). Pipeline env is
merged into every step at load time (pipeline < job < step), so a Run never
depends on process-wide state beyond os.environ.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from . import settings
from .dag import JobGraph
from .errors import ConfigurationError, DuplicateJobError
from .model import Job, RunCondition, Step

logger = logging.getLogger(__name__)

_CONDITION_ALIASES = {
    "on-success": RunCondition.ON_SUCCESS,
    "success()": RunCondition.ON_SUCCESS,
    "always": RunCondition.ALWAYS,
    "always()": RunCondition.ALWAYS,
    "on-failure": RunCondition.ON_FAILURE,
    "failure()": RunCondition.ON_FAILURE,
}


# -------------------- Schemas --------------------

class StepSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    command: str = Field(validation_alias=AliasChoices("command", "run"), min_length=1)
    name: Optional[str] = None
    workdir: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("workdir", "working-directory", "cwd")
    )
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            return {str(k): str(val) for k, val in v.items()}
        return v


class JobSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    steps: List[StepSpec] = Field(min_length=1)
    depends_on: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("dependsOn", "depends_on", "needs")
    )
    condition: RunCondition = Field(default=RunCondition.ON_SUCCESS, validation_alias=AliasChoices("condition", "if"))
    runtime_label: str = Field(
        default_factory=lambda: settings.DEFAULT_LABEL,
        validation_alias=AliasChoices("runtimeLabel", "runtime_label", "runs-on"),
    )
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)
    max_retries: int = Field(default=0, ge=0, validation_alias=AliasChoices("maxRetries", "max_retries"))

    @field_validator("steps", mode="before")
    @classmethod
    def _command_shorthand(cls, v: Any) -> Any:
        # allow "- docker build ." as a step
        if isinstance(v, list):
            return [{"command": s} if isinstance(s, str) else s for s in v]
        return v

    @field_validator("depends_on", mode="before")
    @classmethod
    def _single_dependency(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v if v is not None else []

    @field_validator("condition", mode="before")
    @classmethod
    def _normalize_condition(cls, v: Any) -> Any:
        if isinstance(v, str):
            key = v.strip().lower().replace("_", "-")
            if key not in _CONDITION_ALIASES:
                raise ValueError(f"unknown condition {v!r} (expected on-success, always or on-failure)")
            return _CONDITION_ALIASES[key]
        return v

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            return {str(k): str(val) for k, val in v.items()}
        return v


class PipelineSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = "pipeline"
    env: Dict[str, str] = Field(default_factory=dict)
    workers: Optional[Dict[str, int]] = None
    scheduling_timeout: Optional[float] = Field(
        default=None, gt=0, validation_alias=AliasChoices("schedulingTimeout", "scheduling_timeout")
    )
    jobs: Dict[str, JobSpec] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            return {str(k): str(val) for k, val in v.items()}
        return v

    @field_validator("workers")
    @classmethod
    def _non_negative_slots(cls, v: Optional[Dict[str, int]]) -> Optional[Dict[str, int]]:
        if v is not None:
            for label, slots in v.items():
                if slots < 0:
                    raise ValueError(f"worker slots for {label!r} must be >= 0, got {slots}")
        return v


# -------------------- Loaded pipeline --------------------

@dataclass
class Pipeline:
    name: str
    graph: JobGraph
    workers: Optional[Dict[str, int]] = None
    scheduling_timeout: Optional[float] = None
    env: Dict[str, str] = field(default_factory=dict)
    source: Optional[Path] = None


def _to_job(name: str, spec: JobSpec, pipeline_env: Mapping[str, str]) -> Job:
    steps = []
    for idx, s in enumerate(spec.steps, start=1):
        steps.append(
            Step(
                name=s.name or f"step {idx}",
                command=s.command,
                workdir=s.workdir,
                env={**pipeline_env, **spec.env, **s.env},
                timeout=s.timeout,
            )
        )
    return Job(
        name=name,
        steps=tuple(steps),
        needs=tuple(spec.depends_on),
        condition=spec.condition,
        runtime_label=spec.runtime_label,
        env=dict(spec.env),
        timeout=spec.timeout,
        max_retries=spec.max_retries,
    )


def _format_validation_error(e: ValidationError) -> str:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        lines.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(lines)


def parse_pipeline(data: Any, name: str | None = None) -> Pipeline:
    """
    Turn a parsed document into a validated Pipeline.

    Raises:
      ConfigurationError: schema problems, duplicate jobs, dangling dependencies, cycles
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Pipeline document must be a mapping, got {type(data).__name__}")

    if "jobs" not in data:
        data = {"jobs": dict(data)}
    if name is not None and "name" not in data:
        data = {**data, "name": name}

    try:
        spec = PipelineSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid pipeline definition: {_format_validation_error(e)}") from e

    graph = JobGraph(spec.name)
    for job_name, job_spec in spec.jobs.items():
        graph.add_job(_to_job(job_name, job_spec, spec.env))
    graph.validate()

    logger.debug("loaded pipeline %r with %d jobs", spec.name, len(graph))
    return Pipeline(
        name=spec.name,
        graph=graph,
        workers=spec.workers,
        scheduling_timeout=spec.scheduling_timeout,
        env=dict(spec.env),
    )


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of keeping the last one."""


def _construct_unique_mapping(loader: _UniqueKeyLoader, node: yaml.MappingNode, deep: bool = False) -> Dict[Any, Any]:
    # keys written out in this mapping; merged (<<) keys may be overridden by them
    explicit_nodes = {id(k) for k, _ in node.value if k.tag != "tag:yaml.org,2002:merge"}
    loader.flatten_mapping(node)

    mapping: Dict[Any, Any] = {}
    explicit_keys = set()
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if id(key_node) in explicit_nodes:
            if key in explicit_keys:
                raise ConfigurationError(f"Duplicate key {key!r} (line {key_node.start_mark.line + 1})")
            explicit_keys.add(key)
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


_UniqueKeyLoader.add_constructor(yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_unique_mapping)


def _check_duplicate_jobs(root: Optional[yaml.Node]) -> None:
    """A repeated key in the jobs mapping is a duplicate job, not just a bad document."""
    if not isinstance(root, yaml.MappingNode):
        return
    jobs_node: yaml.MappingNode = root
    for key, value in root.value:
        if isinstance(key, yaml.ScalarNode) and key.value == "jobs" and isinstance(value, yaml.MappingNode):
            jobs_node = value
    seen = set()
    for key, _value in jobs_node.value:
        if isinstance(key, yaml.ScalarNode):
            if key.value in seen:
                raise DuplicateJobError(key.value)
            seen.add(key.value)


def loads_pipeline(text: str, name: str | None = None) -> Pipeline:
    try:
        _check_duplicate_jobs(yaml.compose(text, Loader=yaml.SafeLoader))
        data = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse pipeline document: {e}") from e
    return parse_pipeline(data, name=name)


def load_pipeline(path: Union[str, Path]) -> Pipeline:
    """Load a pipeline document from disk. The file stem is the default pipeline name."""
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigurationError(f"Pipeline file not found: {p}")
    pipeline = loads_pipeline(p.read_text(encoding="utf-8"), name=p.stem)
    pipeline.source = p
    return pipeline
