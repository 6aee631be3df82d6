# run.py
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .artifacts import ArtifactRef
from .gates import GateResult, GateVerdict


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL = {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}

# Monotonic: nothing returns to PENDING, terminal states are final.
_JOB_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED},
}

_RUN_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED},
}


class IllegalTransition(RuntimeError):
    pass


@dataclass
class StepRecord:
    name: str
    attempts: int = 0
    exit_code: Optional[int] = None
    duration_ms: int = 0
    log: Optional[str] = None
    gate: Optional[GateResult] = None
    verdict: Optional[GateVerdict] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "attempts": self.attempts,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "log": self.log,
        }
        if self.gate is not None:
            d["gate"] = self.gate.to_dict()
        if self.verdict is not None:
            d["decision"] = self.verdict.to_dict()
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass
class JobRecord:
    name: str
    status: JobStatus = JobStatus.PENDING
    steps: List[StepRecord] = field(default_factory=list)
    artifacts: Dict[str, ArtifactRef] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    skipped_because: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def with_warning(self) -> bool:
        return self.status is JobStatus.SUCCEEDED and bool(self.warnings)

    def transition(self, new: JobStatus) -> None:
        if new not in _JOB_TRANSITIONS.get(self.status, set()):
            raise IllegalTransition(f"job '{self.name}': {self.status.value} -> {new.value}")
        self.status = new
        if new is JobStatus.RUNNING:
            self.started_at = time.time()
        elif new.terminal:
            self.finished_at = time.time()

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": self.status.value,
            "with_warning": self.with_warning,
            "warnings": list(self.warnings),
            "steps": [s.to_dict() for s in self.steps],
            "artifacts": {n: r.to_dict() for n, r in sorted(self.artifacts.items())},
            "error": self.error,
        }
        if self.skipped_because:
            d["skipped_because"] = self.skipped_because
        if self.started_at and self.finished_at:
            d["duration_s"] = round(self.finished_at - self.started_at, 3)
        return d


@dataclass
class Run:
    """
    One execution of a JobGraph. Only the PipelineEngine mutates it,
    and only while holding its lock.
    """
    pipeline: str
    jobs: Dict[str, JobRecord]
    run_id: str = field(default_factory=lambda: time.strftime("%Y%m%d-%H%M%S-") + uuid.uuid4().hex[:8])
    status: RunStatus = RunStatus.PENDING
    degraded: bool = False
    cancel_requested: bool = False
    fatal_error: Optional[Dict[str, Any]] = None
    root_cause: Optional[Dict[str, Any]] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @classmethod
    def for_jobs(cls, pipeline: str, names: List[str], run_id: Optional[str] = None) -> Run:
        jobs = {n: JobRecord(n) for n in sorted(names)}
        if run_id:
            return cls(pipeline=pipeline, jobs=jobs, run_id=run_id)
        return cls(pipeline=pipeline, jobs=jobs)

    def transition(self, new: RunStatus) -> None:
        if new not in _RUN_TRANSITIONS.get(self.status, set()):
            raise IllegalTransition(f"run {self.run_id}: {self.status.value} -> {new.value}")
        self.status = new
        if new is RunStatus.RUNNING:
            self.started_at = time.time()
        else:
            self.finished_at = time.time()

    def statuses(self) -> Dict[str, JobStatus]:
        return {n: r.status for n, r in self.jobs.items()}

    @property
    def failed_jobs(self) -> List[str]:
        return [n for n, r in self.jobs.items() if r.status is JobStatus.FAILED]
