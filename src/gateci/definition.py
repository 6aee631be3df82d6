# definition.py
"""
Pipeline definition loading.

Two formats produce the same List[Job]:
  - YAML documents, validated with pydantic models below
  - Python workflow files defining workflow() -> List[Job] or JOBS = [...]

Example YAML:

    name: ci-cd
    defaults:
      timeout: 900
      gate: {blocking_metrics: [bugs, vulnerabilities]}
    jobs:
      build-and-analyze:
        steps:
          - uses: checkout
          - run: npm install
          - name: Quality gate
            uses: scan
            with: {command: "sonar-scanner", report: quality-gate.json}
            secrets: {SONAR_TOKEN: SONAR_TOKEN}
            gate: true
          - run: npm run build
        outputs: {build: dist}
      deploy:
        needs: [build-and-analyze]
        inputs: [build]
        steps:
          - uses: deploy
            with: {target: lambda, command: "aws lambda update-function-code ..."}
            secrets: {AWS_ACCESS_KEY_ID: AWS_ACCESS_KEY_ID}
"""
from __future__ import annotations

import runpy
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import DefinitionError
from .gates import GatePolicy
from .model import Job, RetryPolicy, Step

Scalar = Union[str, int, float, bool]


def _to_str(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# -------------------- Schemas --------------------

class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class GateDef(_Strict):
    fail_on_error: bool = True
    blocking_metrics: List[str] = Field(default_factory=list)
    warn_only_metrics: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _disjoint(self) -> GateDef:
        overlap = set(self.blocking_metrics) & set(self.warn_only_metrics)
        if overlap:
            raise ValueError(f"metrics cannot be both blocking and warn-only: {sorted(overlap)}")
        return self

    def to_policy(self) -> GatePolicy:
        return GatePolicy.of(
            fail_on_error=self.fail_on_error,
            blocking_metrics=self.blocking_metrics,
            warn_only_metrics=self.warn_only_metrics,
        )


class RetryDef(_Strict):
    retries: int = Field(0, ge=0)
    backoff: float = Field(0.0, ge=0)
    backoff_factor: float = Field(2.0, ge=1)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(retries=self.retries, backoff=self.backoff, backoff_factor=self.backoff_factor)


class StepDef(_Strict):
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Scalar] = Field(default_factory=dict, alias="with")
    cwd: Optional[str] = None
    env: Dict[str, Scalar] = Field(default_factory=dict)
    secrets: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(None, gt=0)
    gate: Union[bool, GateDef, None] = None

    @model_validator(mode="after")
    def _run_or_uses(self) -> StepDef:
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.run is not None and self.with_:
            raise ValueError("'with' is only valid together with 'uses'")
        if self.run is not None and self.gate:
            raise ValueError("only adapter steps ('uses') can be gates")
        return self

    def display_name(self, index: int) -> str:
        if self.name:
            return self.name
        if self.uses:
            return self.uses
        first = (self.run or "").strip().splitlines()[0] if (self.run or "").strip() else ""
        return first[:40] or f"step-{index + 1}"


class JobDef(_Strict):
    needs: List[str] = Field(default_factory=list)
    steps: List[StepDef] = Field(min_length=1)
    outputs: Dict[str, str] = Field(default_factory=dict)
    inputs: List[str] = Field(default_factory=list)
    env: Dict[str, Scalar] = Field(default_factory=dict)
    retry: Optional[RetryDef] = None
    timeout: Optional[float] = Field(None, gt=0)

    @field_validator("needs", "inputs", mode="before")
    @classmethod
    def _listify(cls, v):
        # needs: build  ==  needs: [build]
        return [v] if isinstance(v, str) else v


class DefaultsDef(_Strict):
    timeout: Optional[float] = Field(None, gt=0)
    retry: RetryDef = Field(default_factory=RetryDef)
    gate: GateDef = Field(default_factory=GateDef)


class PipelineDef(_Strict):
    name: str = "pipeline"
    defaults: DefaultsDef = Field(default_factory=DefaultsDef)
    jobs: Dict[str, JobDef] = Field(min_length=1)


@dataclass(frozen=True)
class Pipeline:
    name: str
    jobs: List[Job]


# -------------------- Conversion --------------------

def _step(defn: StepDef, index: int, defaults: DefaultsDef) -> Step:
    policy: Optional[GatePolicy] = None
    if defn.gate is True:
        policy = defaults.gate.to_policy()
    elif isinstance(defn.gate, GateDef):
        policy = defn.gate.to_policy()

    return Step(
        name=defn.display_name(index),
        run=defn.run,
        uses=defn.uses,
        params={k: _to_str(v) for k, v in defn.with_.items()},
        cwd=defn.cwd,
        env={k: _to_str(v) for k, v in defn.env.items()},
        secrets=dict(defn.secrets),
        timeout=defn.timeout,
        gate=policy,
    )


def _job(name: str, defn: JobDef, defaults: DefaultsDef) -> Job:
    retry = (defn.retry or defaults.retry).to_policy()
    return Job(
        name=name,
        steps=tuple(_step(s, i, defaults) for i, s in enumerate(defn.steps)),
        needs=tuple(defn.needs),
        outputs=dict(defn.outputs),
        inputs=tuple(defn.inputs),
        env={k: _to_str(v) for k, v in defn.env.items()},
        retry=retry,
        timeout=defn.timeout if defn.timeout is not None else defaults.timeout,
    )


def _format_validation(e: ValidationError) -> str:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"])
        lines.append(f"  {loc}: {err['msg']}")
    return "Invalid pipeline definition:\n" + "\n".join(lines)


def parse_pipeline(data: object, *, default_name: str = "pipeline") -> Pipeline:
    if not isinstance(data, dict):
        raise DefinitionError("Pipeline definition root must be a mapping")
    data = dict(data)
    data.setdefault("name", default_name)
    try:
        defn = PipelineDef.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(_format_validation(e)) from None
    try:
        jobs = [_job(name, j, defn.defaults) for name, j in defn.jobs.items()]
    except ValueError as e:
        raise DefinitionError(str(e)) from None
    return Pipeline(name=defn.name, jobs=jobs)


def load_pipeline_text(text: str, *, default_name: str = "pipeline") -> Pipeline:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Pipeline definition is not valid YAML: {e}") from None
    return parse_pipeline(data, default_name=default_name)


# -------------------- Python workflows --------------------

def load_workflow(path: str | Path) -> List[Job]:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    module_name = f"gateci_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
        jobs = None
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            jobs = globals_dict["workflow"]()
        elif "JOBS" in globals_dict:
            jobs = globals_dict["JOBS"]
    except DefinitionError:
        raise
    except Exception as e:
        raise DefinitionError(f"Failed to load workflow {wf_path.name}: {type(e).__name__}: {e}") from e

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise DefinitionError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )
    return jobs


def load_definition(path: str | Path) -> Pipeline:
    """Load a pipeline from .yml/.yaml or .py."""
    p = Path(path)
    if not p.exists():
        raise DefinitionError(f"Pipeline file not found: {p}")
    if p.suffix in (".yml", ".yaml"):
        return load_pipeline_text(p.read_text(encoding="utf-8"), default_name=p.stem)
    if p.suffix == ".py":
        return Pipeline(name=p.stem, jobs=load_workflow(p))
    raise DefinitionError(f"Unsupported pipeline format: {p.name} (use .yml, .yaml or .py)")
