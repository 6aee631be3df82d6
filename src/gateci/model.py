# model.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from .gates import GatePolicy

# ${{ secrets.NAME }} placeholders, same syntax hosted CI uses
SECRET_REF = re.compile(r"\$\{\{\s*secrets\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def secret_refs_in(text: str) -> Set[str]:
    return set(SECRET_REF.findall(text or ""))


@dataclass(frozen=True)
class RetryPolicy:
    """
    Per-job retry policy for failed non-gate steps.

    retries:         additional attempts after the first one
    backoff:         seconds to wait before the first retry
    backoff_factor:  multiplier applied to the wait for every further retry
    """
    retries: int = 0
    backoff: float = 0.0
    backoff_factor: float = 2.0

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.backoff < 0 or self.backoff_factor < 1:
            raise ValueError("backoff must be >= 0 and backoff_factor >= 1")

    def delay(self, attempt: int) -> float:
        """Wait before attempt number `attempt` (1 = first retry)."""
        return self.backoff * (self.backoff_factor ** max(0, attempt - 1))


@dataclass(frozen=True)
class Step:
    """
    A single executable unit inside a job: either a shell command (`run`)
    or a named adapter invocation (`uses` + `params`).
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    params: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    # env var name -> secret name
    secrets: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    gate: Optional[GatePolicy] = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"Step '{self.name}' must define exactly one of run/uses")
        if self.run is not None and self.params:
            raise ValueError(f"Step '{self.name}': params are only valid for adapter steps")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"Step '{self.name}': timeout must be positive")

    @property
    def kind(self) -> str:
        return "command" if self.run is not None else "adapter"

    @property
    def is_gate(self) -> bool:
        return self.gate is not None

    @property
    def secret_refs(self) -> Set[str]:
        """Every secret name this step needs at dispatch time."""
        names = set(self.secrets.values())
        names |= secret_refs_in(self.run or "")
        for value in self.params.values():
            names |= secret_refs_in(value)
        return names


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps + dependencies + artifact contract.

    outputs: artifact name -> path inside the job workspace, stored after success
    inputs:  artifact names produced by upstream jobs, restored before the first step
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    outputs: Dict[str, str] = field(default_factory=dict)
    inputs: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("job name must be a non-empty string")
        if not self.steps:
            raise ValueError(f"Job '{self.name}' must have at least one step")
        # normalize sequences so the job stays immutable
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", tuple(self.needs))
        object.__setattr__(self, "inputs", tuple(self.inputs))

    @property
    def gate_steps(self) -> List[Step]:
        return [s for s in self.steps if s.is_gate]

    def step_timeout(self, step: Step, default: Optional[float] = None) -> Optional[float]:
        if step.timeout is not None:
            return step.timeout
        if self.timeout is not None:
            return self.timeout
        return default
