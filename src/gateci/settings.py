from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Tuple

from .steps import DEFAULT_PASSTHROUGH_ENV


def _env_int(environ: Mapping[str, str], key: str, default: Optional[int] = None) -> Optional[int]:
    raw = environ.get(key)
    return int(raw) if raw not in (None, "") else default


def _env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    return float(raw) if raw not in (None, "") else default


def _env_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class EngineSettings:
    """
    Engine knobs. Defaults can be overridden through GATECI_* environment
    variables, and the CLI overrides both.
    """
    work_dir: str = ".gateci/runs"
    artifact_dir: str = ".gateci/artifacts"
    max_workers: Optional[int] = None
    step_timeout: float = 3600.0
    cancel_grace: float = 10.0
    fail_fast: bool = False
    keep_runs: int = 5
    passthrough_env: Tuple[str, ...] = field(default=DEFAULT_PASSTHROUGH_ENV)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> EngineSettings:
        environ = os.environ if environ is None else environ
        passthrough = environ.get("GATECI_PASSTHROUGH_ENV")
        return cls(
            work_dir=environ.get("GATECI_WORK_DIR", cls.work_dir),
            artifact_dir=environ.get("GATECI_ARTIFACT_DIR", cls.artifact_dir),
            max_workers=_env_int(environ, "GATECI_WORKERS"),
            step_timeout=_env_float(environ, "GATECI_STEP_TIMEOUT", cls.step_timeout),
            cancel_grace=_env_float(environ, "GATECI_CANCEL_GRACE", cls.cancel_grace),
            fail_fast=_env_bool(environ, "GATECI_FAIL_FAST", cls.fail_fast),
            keep_runs=_env_int(environ, "GATECI_KEEP_RUNS", cls.keep_runs),
            passthrough_env=(
                tuple(p.strip() for p in passthrough.split(",") if p.strip())
                if passthrough else DEFAULT_PASSTHROUGH_ENV
            ),
        )

    def workers(self) -> int:
        if self.max_workers is not None:
            return max(1, self.max_workers)
        c = os.cpu_count() or 2
        return max(1, c - 1)

    def override(self, **changes) -> EngineSettings:
        """Apply non-None overrides (CLI options)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
