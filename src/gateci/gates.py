# gates.py
"""
Quality gate evaluation.

A gate step (for example a static-analysis scan) reports a GateResult.
The GateEvaluator turns that result plus a GatePolicy into a decision:

  PROCEED   - downstream jobs may run
  BLOCK     - the owning job fails, downstream jobs are skipped
  ESCALATE  - proceed, but the job and the run are flagged as degraded

Operators choose strict or best-effort gating through the policy only.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set

from .errors import GateAlreadyConsumedError


class GateOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"  # tool unreachable / malformed response


class GateDecision(str, Enum):
    PROCEED = "proceed"
    BLOCK = "block"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class MetricViolation:
    metric: str
    actual: Optional[str] = None
    threshold: Optional[str] = None

    def describe(self) -> str:
        if self.actual is None:
            return self.metric
        if self.threshold is None:
            return f"{self.metric}={self.actual}"
        return f"{self.metric}={self.actual} (threshold {self.threshold})"

    def to_dict(self) -> Dict[str, Any]:
        return {"metric": self.metric, "actual": self.actual, "threshold": self.threshold}


@dataclass(frozen=True)
class GateResult:
    """Outcome of one gate step in one run."""
    outcome: GateOutcome
    violations: tuple[MetricViolation, ...] = ()
    detail: str = ""

    @classmethod
    def passed(cls, detail: str = "") -> GateResult:
        return cls(GateOutcome.PASS, detail=detail)

    @classmethod
    def failed(cls, *violations: MetricViolation, detail: str = "") -> GateResult:
        return cls(GateOutcome.FAIL, violations=tuple(violations), detail=detail)

    @classmethod
    def error(cls, detail: str) -> GateResult:
        return cls(GateOutcome.ERROR, detail=detail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "violations": [v.to_dict() for v in self.violations],
            "detail": self.detail,
        }


@dataclass(frozen=True)
class GatePolicy:
    fail_on_error: bool = True
    blocking_metrics: FrozenSet[str] = frozenset()
    warn_only_metrics: FrozenSet[str] = frozenset()

    @classmethod
    def of(
        cls,
        *,
        fail_on_error: bool = True,
        blocking_metrics: Iterable[str] = (),
        warn_only_metrics: Iterable[str] = (),
    ) -> GatePolicy:
        blocking = frozenset(blocking_metrics)
        warn_only = frozenset(warn_only_metrics)
        overlap = blocking & warn_only
        if overlap:
            raise ValueError(f"Metrics cannot be both blocking and warn-only: {sorted(overlap)}")
        return cls(fail_on_error=fail_on_error, blocking_metrics=blocking, warn_only_metrics=warn_only)


@dataclass(frozen=True)
class GateVerdict:
    decision: GateDecision
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"decision": self.decision.value, "reasons": list(self.reasons)}


class GateEvaluator:
    """
    Stateless apart from consumption tracking: every GateResult may be
    evaluated once. Pass a `key` (e.g. "run/job/step") to enforce it.
    """

    def __init__(self) -> None:
        self._consumed: Set[str] = set()
        self._lock = threading.Lock()

    def evaluate(
        self,
        result: GateResult,
        policy: GatePolicy,
        *,
        key: Optional[str] = None,
    ) -> GateVerdict:
        if key is not None:
            with self._lock:
                if key in self._consumed:
                    raise GateAlreadyConsumedError(f"Gate result {key!r} was already evaluated")
                self._consumed.add(key)

        if result.outcome is GateOutcome.PASS:
            return GateVerdict(GateDecision.PROCEED, ["quality gate passed"])

        if result.outcome is GateOutcome.ERROR:
            why = f"gate tool error: {result.detail or 'no detail'}"
            if policy.fail_on_error:
                return GateVerdict(GateDecision.BLOCK, [why])
            return GateVerdict(GateDecision.ESCALATE, [why + " (fail_on_error disabled)"])

        # FAIL
        if not result.violations:
            return GateVerdict(GateDecision.BLOCK, [result.detail or "quality gate failed"])

        blocking = [v for v in result.violations if v.metric in policy.blocking_metrics]
        if blocking:
            return GateVerdict(
                GateDecision.BLOCK,
                [f"blocking metric violated: {v.describe()}" for v in blocking],
            )

        warn_only = [v for v in result.violations if v.metric in policy.warn_only_metrics]
        other = [v for v in result.violations if v.metric not in policy.warn_only_metrics]

        reasons = [f"warn-only metric violated: {v.describe()}" for v in warn_only]
        if not other:
            return GateVerdict(GateDecision.ESCALATE, reasons)

        # With no blocking set configured, any non warn-only violation blocks.
        if not policy.blocking_metrics:
            return GateVerdict(
                GateDecision.BLOCK,
                [f"metric violated: {v.describe()}" for v in other],
            )
        reasons += [f"non-blocking metric violated: {v.describe()}" for v in other]
        return GateVerdict(GateDecision.ESCALATE, reasons)
