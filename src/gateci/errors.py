# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class GateCIError(Exception):
    """Base class for every error raised by gateci."""

    #: step-level errors the engine may retry under the job's RetryPolicy
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": type(self).__name__, "message": str(self)}


# ----------------------------------------------------------------------
# Graph build (fatal, raised before any execution)
# ----------------------------------------------------------------------

class DefinitionError(GateCIError):
    """The pipeline definition is malformed or references unknown things."""


@dataclass(eq=False)
class CycleError(DefinitionError):
    cycle: List[str]

    def __str__(self) -> str:
        return "Dependency cycle detected: " + " -> ".join(self.cycle)


@dataclass(eq=False)
class UnknownDependencyError(DefinitionError):
    job: str
    dependency: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Job '{self.job}' needs missing job '{self.dependency}'. "
            f"Known jobs: {self.known}"
        )


@dataclass(eq=False)
class DuplicateJobError(DefinitionError):
    names: List[str]

    def __str__(self) -> str:
        return f"Duplicate job names found: {self.names}"


@dataclass(eq=False)
class UnknownArtifactError(DefinitionError):
    job: str
    artifact: str

    def __str__(self) -> str:
        return (
            f"Job '{self.job}' consumes artifact '{self.artifact}' "
            "which no upstream job produces"
        )


# ----------------------------------------------------------------------
# Step level (contained to a job)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class StepError(GateCIError):
    """
    Structured step error with enough context for:
      - clean CLI output
      - the run report (first error per job)
    """
    job: str
    step: str
    message: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}': {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": type(self).__name__,
            "job": self.job,
            "step": self.step,
            "message": self.message,
        }


@dataclass(eq=False)
class StepFailedError(StepError):
    exit_code: int = 1
    hint: Optional[str] = None
    retryable = True

    def __str__(self) -> str:
        out = f"[{self.job}] step '{self.step}' failed (exit={self.exit_code})"
        if self.message:
            out += f": {self.message}"
        return out

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["exit_code"] = self.exit_code
        if self.hint:
            d["hint"] = self.hint
        return d


@dataclass(eq=False)
class StepTimeoutError(StepError):
    timeout: float = 0.0
    retryable = True

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.timeout:g}s"


@dataclass(eq=False)
class AdapterNotFoundError(StepError):
    adapter: str = ""
    retryable = True

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}': no adapter named '{self.adapter}'"


@dataclass(eq=False)
class StepCancelledError(StepError):
    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' was terminated by cancellation"


@dataclass(eq=False)
class SecretMissingError(StepError):
    secret: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}': secret '{self.secret}' is not defined"


@dataclass(eq=False)
class GateBlockedError(StepError):
    reasons: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        why = "; ".join(self.reasons) or "quality gate failed"
        return f"[{self.job}] quality gate blocked promotion: {why}"

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["reasons"] = list(self.reasons)
        return d


class GateAlreadyConsumedError(GateCIError):
    """A GateResult was handed to the evaluator a second time."""


# ----------------------------------------------------------------------
# Engine fatal (abort the whole run)
# ----------------------------------------------------------------------

class EngineFatalError(GateCIError):
    """Errors that abort a run immediately with no partial credit."""


class ArtifactStoreError(EngineFatalError):
    """The artifact store is unavailable or its index is unreadable."""


@dataclass(eq=False)
class ArtifactNotFoundError(EngineFatalError):
    digest: str
    name: str = ""
    reason: str = "missing"

    def __str__(self) -> str:
        label = f"'{self.name}' " if self.name else ""
        return f"Artifact {label}({self.digest[:12]}) {self.reason}"
