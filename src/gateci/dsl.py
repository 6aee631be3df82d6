# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .gates import GatePolicy
from .model import Job, RetryPolicy, Step


def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    secrets: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> Step:
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env=dict(env or {}),
        secrets=dict(secrets or {}),
        timeout=timeout,
    )


def use(
    name: str,
    adapter: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    secrets: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    gate: Optional[GatePolicy] = None,
    **params: Any,
) -> Step:
    """Adapter step: use("Deploy", "deploy", command="...", target="lambda")."""
    return Step(
        name=name,
        uses=adapter,
        params={k: str(v) for k, v in params.items()},
        cwd=cwd,
        env=dict(env or {}),
        secrets=dict(secrets or {}),
        timeout=timeout,
        gate=gate,
    )


def gate(
    *,
    blocking: Iterable[str] = (),
    warn_only: Iterable[str] = (),
    fail_on_error: bool = True,
) -> GatePolicy:
    return GatePolicy.of(
        fail_on_error=fail_on_error,
        blocking_metrics=blocking,
        warn_only_metrics=warn_only,
    )


def checkout(name: str = "Checkout", **params: Any) -> Step:
    return use(name, "checkout", **params)


def scan(name: str, command: str, *, policy: Optional[GatePolicy] = None, **params: Any) -> Step:
    """Quality gate step; defaults to a strict gate."""
    return use(name, "scan", command=command, gate=policy or GatePolicy(), **params)


def deploy(
    name: str,
    command: str,
    *,
    target: str,
    secrets: Optional[Dict[str, str]] = None,
    **params: Any,
) -> Step:
    return use(name, "deploy", command=command, target=target, secrets=secrets, **params)


def retry(retries: int, backoff: float = 0.0, backoff_factor: float = 2.0) -> RetryPolicy:
    return RetryPolicy(retries=retries, backoff=backoff, backoff_factor=backoff_factor)


def job(
    name: str,
    *steps: Step,  # allow job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # still allow job(..., steps_list=[...])
    needs: Optional[List[str]] = None,
    outputs: Optional[Dict[str, str]] = None,
    inputs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    retry: Optional[RetryPolicy] = None,
    timeout: Optional[float] = None,
    # convenience
    cwd: str | None = None,  # default cwd for steps
) -> Job:
    steps_final = list(steps_list or []) + list(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            s if s.cwd is not None else replace(s, cwd=cwd)
            for s in steps_final
        ]

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or []),
        outputs=dict(outputs or {}),
        inputs=tuple(inputs or []),
        env={k: str(v) for k, v in (env or {}).items()},
        retry=retry or RetryPolicy(),
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._outputs: dict[str, str] = {}
        self._inputs: list[str] = []
        self._env: dict[str, str] = {}
        self._retry = RetryPolicy()
        self._timeout: Optional[float] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def step(self, step: Step):
        self._steps.append(step)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(sh(name, run, cwd=cwd))
        return self

    def produces(self, name: str, path: str):
        self._outputs[name] = path
        return self

    def consumes(self, *artifacts: str):
        self._inputs.extend(artifacts)
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_retry(self, retries: int, backoff: float = 0.0, backoff_factor: float = 2.0):
        self._retry = RetryPolicy(retries=retries, backoff=backoff, backoff_factor=backoff_factor)
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=tuple(self._steps),
            needs=tuple(self._needs),
            outputs=dict(self._outputs),
            inputs=tuple(self._inputs),
            env=dict(self._env),
            retry=self._retry,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("node", ["18", "20"]).jobs(
            lambda v: job(f"test-node{v}", sh(...))
        )

    Each job sees its value as MATRIX_<KEY> (here MATRIX_NODE) unless the
    builder already set that variable.
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    @property
    def env_name(self) -> str:
        return "MATRIX_" + "".join(c if c.isalnum() else "_" for c in self.key).upper()

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        out = []
        for v in self.values:
            j = builder(v)
            out.append(replace(j, env={self.env_name: str(v), **j.env}))
        return out


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job | List[Job]) -> List[Job]:
    """
    Workflow definition helper. Accepts jobs or lists of jobs (matrix output).

        from gateci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    out: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            out.extend(j)
        else:
            out.append(j)
    return out
