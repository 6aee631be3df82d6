# report.py
"""Machine-readable run summary and CLI exit codes."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .run import JobStatus, Run, RunStatus

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEFINITION = 2
EXIT_CANCELLED = 130

REPORT_VERSION = 1


def exit_code(run: Run) -> int:
    if run.status is RunStatus.SUCCEEDED:
        return EXIT_OK
    if run.status is RunStatus.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILED


def gate_decisions(run: Run) -> List[Dict[str, Any]]:
    out = []
    for name, rec in run.jobs.items():
        for step in rec.steps:
            if step.verdict is not None:
                out.append({
                    "job": name,
                    "step": step.name,
                    "outcome": step.gate.outcome.value if step.gate else None,
                    "decision": step.verdict.decision.value,
                    "reasons": list(step.verdict.reasons),
                })
    return out


def build_report(run: Run, source: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Overall status, per-job status (with the first error behind every
    failed or skipped job), gate decisions and artifact references.
    `source` is the git provenance of the checked out tree, if known.
    """
    duration = None
    if run.started_at and run.finished_at:
        duration = round(run.finished_at - run.started_at, 3)

    counts: Dict[str, int] = {s.value: 0 for s in JobStatus}
    for rec in run.jobs.values():
        counts[rec.status.value] += 1

    return {
        "version": REPORT_VERSION,
        "pipeline": run.pipeline,
        "run_id": run.run_id,
        "status": run.status.value,
        "degraded": run.degraded,
        "exit_code": exit_code(run),
        "duration_s": duration,
        "counts": counts,
        "source": source,
        "root_cause": run.root_cause,
        "fatal_error": run.fatal_error,
        "jobs": {name: rec.to_dict() for name, rec in run.jobs.items()},
        "gates": gate_decisions(run),
        "artifacts": [
            ref.to_dict()
            for rec in run.jobs.values()
            for ref in rec.artifacts.values()
        ],
    }


def write_report(run: Run, path: Union[str, Path], source: Optional[Dict[str, Any]] = None) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(build_report(run, source), indent=2, sort_keys=True), encoding="utf-8")
    return p
