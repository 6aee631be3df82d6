import json
import subprocess

import pytest

from gateci.git import source_facts
from gateci.report import EXIT_CANCELLED, EXIT_FAILED, EXIT_OK, exit_code, write_report
from gateci.run import IllegalTransition, JobStatus, Run, RunStatus


def finished_run(status):
    run = Run.for_jobs("demo", ["a"], run_id="run-1")
    run.transition(RunStatus.RUNNING)
    run.jobs["a"].transition(JobStatus.RUNNING)
    run.jobs["a"].transition(JobStatus.SUCCEEDED)
    run.transition(status)
    return run


@pytest.mark.parametrize(
    "status, code",
    [
        (RunStatus.SUCCEEDED, EXIT_OK),
        (RunStatus.FAILED, EXIT_FAILED),
        (RunStatus.CANCELLED, EXIT_CANCELLED),
    ],
)
def test_exit_codes(status, code):
    assert exit_code(finished_run(status)) == code


def test_transitions_are_monotonic():
    run = finished_run(RunStatus.SUCCEEDED)
    with pytest.raises(IllegalTransition):
        run.jobs["a"].transition(JobStatus.RUNNING)
    with pytest.raises(IllegalTransition):
        run.transition(RunStatus.RUNNING)


def test_write_report(tmp_path):
    path = write_report(finished_run(RunStatus.SUCCEEDED), tmp_path / "r" / "report.json", source={"commit": "abc"})
    data = json.loads(path.read_text())
    assert data["run_id"] == "run-1"
    assert data["status"] == "succeeded"
    assert data["counts"]["succeeded"] == 1
    assert data["source"] == {"commit": "abc"}
    assert data["jobs"]["a"]["duration_s"] >= 0


def test_source_facts_outside_repository(tmp_path):
    assert source_facts(tmp_path) is None


def test_source_facts_in_repository(tmp_path):
    try:
        subprocess.run(["git", "init", "-q", str(tmp_path)], check=True)
        subprocess.run(
            ["git", "-C", str(tmp_path), "-c", "user.name=ci", "-c", "user.email=ci@example.com",
             "commit", "-q", "--allow-empty", "-m", "init"],
            check=True,
        )
    except (FileNotFoundError, subprocess.CalledProcessError):
        pytest.skip("git unavailable")

    facts = source_facts(tmp_path)
    assert len(facts["commit"]) == 40
    assert facts["dirty"] is False
