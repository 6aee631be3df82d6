# engine.py
from __future__ import annotations

import re
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from .adapters import AdapterRegistry, default_registry
from .artifacts import ArtifactStore, pack_path, unpack
from .dag import JobGraph
from .errors import (
    AdapterNotFoundError,
    ArtifactNotFoundError,
    EngineFatalError,
    GateBlockedError,
    GateCIError,
    StepCancelledError,
    StepError,
    StepFailedError,
    StepTimeoutError,
)
from .gates import GateDecision, GateEvaluator, GateResult
from .model import Job, Step
from .run import JobRecord, JobStatus, Run, RunStatus, StepRecord
from .secret_store import SecretStore
from .settings import EngineSettings
from .steps import CancelToken, StepResult, StepRunner, hint_for
from .ui.console import get_console


def _slug(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", text).strip("-").lower() or "step"


def _error_dict(exc: BaseException) -> Dict:
    if isinstance(exc, GateCIError):
        return exc.to_dict()
    return {"kind": type(exc).__name__, "message": str(exc)}


def _redacted(value: Any, redact: Callable[[str], str]) -> Any:
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, list):
        return [_redacted(v, redact) for v in value]
    if isinstance(value, dict):
        return {k: _redacted(v, redact) for k, v in value.items()}
    return value


class PipelineEngine:
    """
    Scheduler + orchestrator.

    - runs the graph wave by wave (JobGraph.topological_batches)
    - jobs of a wave run in parallel on a bounded worker pool
    - steps of a job run sequentially in the job's workspace
    - failed jobs skip their transitive dependents; the rest keep going
    - gate steps go through the GateEvaluator
    - cancel() stops scheduling and terminates in-flight steps after a grace period
    - fatal errors (artifact store) abort the whole run

    The Run record is only mutated here, under self._lock.
    """

    def __init__(
        self,
        graph: JobGraph,
        *,
        pipeline: str = "pipeline",
        settings: Optional[EngineSettings] = None,
        secrets: Optional[SecretStore] = None,
        adapters: Optional[AdapterRegistry] = None,
        store: Optional[ArtifactStore] = None,
        runner: Optional[StepRunner] = None,
        evaluator: Optional[GateEvaluator] = None,
        source_root: Union[str, Path] = ".",
    ):
        self.graph = graph
        self.pipeline = pipeline
        self.settings = settings or EngineSettings()
        self.secrets = secrets or SecretStore()
        self.adapters = adapters or default_registry()
        self._store = store
        self.runner = runner or StepRunner(
            self.secrets,
            self.adapters,
            passthrough_env=self.settings.passthrough_env,
            source_root=source_root,
        )
        self.evaluator = evaluator or GateEvaluator()
        self.cancel_token = CancelToken()
        self._lock = threading.Lock()
        self._run: Optional[Run] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def cancel(self, grace: Optional[float] = None) -> None:
        """Stop scheduling; in-flight steps are terminated after `grace` seconds."""
        grace = self.settings.cancel_grace if grace is None else grace
        with self._lock:
            if self._run is not None:
                self._run.cancel_requested = True
        self.cancel_token.cancel(grace)
        get_console().print_cancel_requested(grace)

    def run(self, run_id: Optional[str] = None) -> Run:
        console = get_console()
        run = Run.for_jobs(self.pipeline, self.graph.names, run_id=run_id)
        with self._lock:
            # cancel() may have been called before run()
            run.cancel_requested = self.cancel_token.cancelled
            self._run = run

        workers = self.settings.workers()
        console.print_run_started(self.pipeline, run.run_id, len(self.graph), workers)

        try:
            store = self._open_store()
            store.retain(run.run_id)
        except EngineFatalError as e:
            with self._lock:
                run.fatal_error = run.root_cause = self._error(e)
                for rec in run.jobs.values():
                    rec.transition(JobStatus.SKIPPED)
                    rec.skipped_because = "run aborted"
                run.transition(RunStatus.FAILED)
            console.print_exception(e)
            return run

        with self._lock:
            run.transition(RunStatus.RUNNING)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            for wave_idx, wave in enumerate(self.graph.topological_batches()):
                if self.cancel_token.cancelled or run.fatal_error:
                    break

                runnable = []
                with self._lock:
                    for name in sorted(wave):
                        rec = run.jobs[name]
                        if rec.status is not JobStatus.PENDING:
                            continue
                        if self.settings.fail_fast and run.failed_jobs:
                            self._skip(run, name, run.failed_jobs[0], reason="fail-fast")
                            continue
                        runnable.append(name)

                if not runnable:
                    continue
                console.print_wave(wave_idx, runnable)

                futures = {pool.submit(self._run_job, run, store, name): name for name in runnable}
                for fut in as_completed(futures):
                    name = futures[fut]
                    try:
                        fut.result()
                    except Exception as e:  # _run_job contains its own errors
                        with self._lock:
                            self._finish(run, run.jobs[name], JobStatus.FAILED, e)
                    with self._lock:
                        if run.jobs[name].status is JobStatus.FAILED:
                            for down in sorted(self.graph.downstream(name)):
                                self._skip(run, down, name)

        self._finalize(run)
        self._print_summary(run)
        return run

    # ------------------------------------------------------------------
    # Job execution (worker threads)
    # ------------------------------------------------------------------
    def _open_store(self) -> ArtifactStore:
        if self._store is None:
            self._store = ArtifactStore(self.settings.artifact_dir)
        return self._store

    def _run_job(self, run: Run, store: ArtifactStore, name: str) -> None:
        console = get_console()
        job = self.graph.job(name)
        rec = run.jobs[name]

        with self._lock:
            if self.cancel_token.cancelled or run.fatal_error:
                # never started: Pending -> Cancelled / Skipped
                if run.fatal_error:
                    self._skip(run, name, "run aborted")
                else:
                    rec.transition(JobStatus.CANCELLED)
                return
            rec.transition(JobStatus.RUNNING)

        console.print_job_start(name)
        run_dir = Path(self.settings.work_dir).resolve() / run.run_id
        workspace = run_dir / "jobs" / name
        if workspace.exists():
            shutil.rmtree(workspace)
        workspace.mkdir(parents=True)

        try:
            self._restore_inputs(run, store, job, workspace)
            for idx, step in enumerate(job.steps):
                log_path = run_dir / "logs" / name / f"{idx + 1:02d}-{_slug(step.name)}.log"
                self._run_step(run, job, rec, idx, step, workspace, log_path)
            self._store_outputs(run, store, job, workspace)
        except StepCancelledError as e:
            with self._lock:
                self._finish(run, rec, JobStatus.CANCELLED, e)
        except EngineFatalError as e:
            console.print_failure(name, str(e), is_job=True)
            with self._lock:
                if run.fatal_error is None:
                    run.fatal_error = self._error(e)
                self._finish(run, rec, JobStatus.FAILED, e)
            # abort: nothing else may keep running
            self.cancel_token.cancel(0)
        except Exception as e:
            with self._lock:
                self._finish(run, rec, JobStatus.FAILED, e)
        else:
            with self._lock:
                self._finish(run, rec, JobStatus.SUCCEEDED)

    def _run_step(
        self,
        run: Run,
        job: Job,
        rec: JobRecord,
        index: int,
        step: Step,
        workspace: Path,
        log_path: Path,
    ) -> None:
        console = get_console()
        srec = StepRecord(step.name, log=str(log_path))
        with self._lock:
            rec.steps.append(srec)

        timeout = job.step_timeout(step, self.settings.step_timeout)
        attempt = 0
        while True:
            attempt += 1
            srec.attempts = attempt
            console.print_step(job.name, step.name, attempt)

            error: Optional[StepError] = None
            try:
                result = self.runner.run(
                    step,
                    job.env,
                    timeout,
                    job=job.name,
                    workdir=workspace,
                    log_path=log_path,
                    cancel=self.cancel_token,
                )
            except (StepTimeoutError, AdapterNotFoundError) as e:
                error = e
            except GateCIError as e:
                # SecretMissingError / StepCancelledError: never retried
                srec.error = self._error(e)
                if not isinstance(e, StepCancelledError):
                    console.print_failure(f"{job.name}/{step.name}", str(e), log=str(log_path))
                raise
            else:
                srec.exit_code = result.exit_code
                srec.duration_ms = result.duration_ms
                if step.is_gate:
                    self._apply_gate(run, job, rec, index, srec, step, result)
                    return
                if result.ok:
                    return
                error = StepFailedError(
                    job=job.name,
                    step=step.name,
                    exit_code=result.exit_code,
                    hint=hint_for(step, result.exit_code),
                    message=result.message or result.output.tail(3),
                )

            srec.error = self._error(error)
            if not error.retryable or step.is_gate or attempt > job.retry.retries:
                console.print_failure(
                    f"{job.name}/{step.name}",
                    str(error),
                    exit_code=getattr(error, "exit_code", None),
                    hint=getattr(error, "hint", None),
                    log=str(log_path),
                )
                raise error

            delay = job.retry.delay(attempt)
            console.print_retry(job.name, step.name, attempt + 1, delay, str(error))
            if self.cancel_token.wait(delay):
                raise StepCancelledError(job=job.name, step=step.name, message="cancelled during retry backoff")

    def _apply_gate(
        self,
        run: Run,
        job: Job,
        rec: JobRecord,
        index: int,
        srec: StepRecord,
        step: Step,
        result: StepResult,
    ) -> None:
        gate = result.gate or GateResult.error("step reported no gate result")
        verdict = self.evaluator.evaluate(gate, step.gate, key=f"{run.run_id}/{job.name}/{index}")
        srec.gate, srec.verdict = gate, verdict
        get_console().print_gate(job.name, step.name, verdict.decision.value, verdict.reasons)

        if verdict.decision is GateDecision.BLOCK:
            error = GateBlockedError(job=job.name, step=step.name, reasons=list(verdict.reasons))
            srec.error = self._error(error)
            raise error
        if verdict.decision is GateDecision.ESCALATE:
            with self._lock:
                rec.warnings.extend(verdict.reasons)
                run.degraded = True

    def _restore_inputs(self, run: Run, store: ArtifactStore, job: Job, workspace: Path) -> None:
        for name in job.inputs:
            producer = self.graph.producer_of(job.name, name)
            with self._lock:
                ref = run.jobs[producer].artifacts.get(name)
            if ref is None:
                raise ArtifactNotFoundError(digest="unknown", name=name, reason=f"was never stored by '{producer}'")
            data = store.get(ref)
            unpack(ref, data, workspace / (ref.path or name))
            get_console().print_artifact_restored(job.name, name, producer)

    def _store_outputs(self, run: Run, store: ArtifactStore, job: Job, workspace: Path) -> None:
        for name, rel in sorted(job.outputs.items()):
            path = workspace / rel
            if not path.exists():
                error = StepFailedError(
                    job=job.name,
                    step="outputs",
                    exit_code=1,
                    message=f"declared artifact '{name}' not found at {rel}",
                )
                get_console().print_failure(job.name, str(error), is_job=True)
                raise error
            data, kind = pack_path(path)
            ref = store.put(run.run_id, job.name, name, data, kind=kind, path=rel)
            with self._lock:
                run.jobs[job.name].artifacts[name] = ref
            get_console().print_artifact_saved(job.name, name, ref.digest)

    # ------------------------------------------------------------------
    # Status bookkeeping (call with self._lock held)
    # ------------------------------------------------------------------
    def _error(self, exc: BaseException) -> Dict:
        # error dicts end up in the persisted report
        return _redacted(_error_dict(exc), self.secrets.redact)

    def _finish(self, run: Run, rec: JobRecord, status: JobStatus, exc: Optional[BaseException] = None) -> None:
        if rec.status.terminal:
            return
        rec.transition(status)
        if exc is not None:
            rec.error = self._error(exc)
            if status is JobStatus.FAILED and run.root_cause is None:
                run.root_cause = dict(rec.error, job=rec.name)
        get_console().print_job_finished(rec.name, status.value, rec.warnings)

    def _skip(self, run: Run, name: str, cause: str, reason: str = "upstream failed") -> None:
        rec = run.jobs[name]
        if rec.status is not JobStatus.PENDING:
            return
        rec.transition(JobStatus.SKIPPED)
        rec.skipped_because = cause
        upstream = run.jobs.get(cause)
        rec.error = upstream.error if upstream is not None else {"kind": "Skipped", "message": cause}
        get_console().print_job_skipped(name, f"{reason}: {cause}")

    def _finalize(self, run: Run) -> None:
        with self._lock:
            for name, rec in run.jobs.items():
                if rec.status is not JobStatus.PENDING:
                    continue
                if run.fatal_error:
                    self._skip(run, name, "run aborted", reason="fatal error")
                else:
                    rec.transition(JobStatus.CANCELLED)

            if run.fatal_error:
                run.transition(RunStatus.FAILED)
            elif run.cancel_requested:
                run.transition(RunStatus.CANCELLED)
            elif any(r.status in (JobStatus.FAILED, JobStatus.SKIPPED) for r in run.jobs.values()):
                run.transition(RunStatus.FAILED)
            else:
                run.transition(RunStatus.SUCCEEDED)

    def _print_summary(self, run: Run) -> None:
        results = {}
        for name, rec in run.jobs.items():
            label = rec.status.value
            if rec.with_warning:
                label += " (with warnings)"
            results[name] = label
        get_console().print_results(results, run.status.value, degraded=run.degraded)
