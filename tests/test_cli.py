import json
from textwrap import dedent

import pytest
from click.testing import CliRunner

from gateci.cli import cli

GOOD = dedent(
    """
    name: demo
    jobs:
      build:
        steps:
          - run: mkdir -p dist && echo built > dist/app.txt
        outputs: {bundle: dist}
      deploy:
        needs: [build]
        inputs: [bundle]
        steps:
          - run: test -f dist/app.txt
          - run: 'echo "token=$TOKEN"'
            secrets: {TOKEN: DEPLOY_TOKEN}
    """
)

FAILING = dedent(
    """
    jobs:
      build:
        steps:
          - run: exit 4
      deploy:
        needs: build
        steps:
          - run: 'true'
    """
)


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for key in ("GATECI_WORK_DIR", "GATECI_ARTIFACT_DIR", "GATECI_FAIL_FAST", "GATECI_KEEP_RUNS"):
        monkeypatch.delenv(key, raising=False)
    return tmp_path


@pytest.fixture
def runner():
    return CliRunner()


def test_validate(project, runner):
    (project / "gateci.yml").write_text(GOOD)
    result = runner.invoke(cli, ["validate"])
    assert result.exit_code == 0
    assert "OK: demo (2 jobs, 2 waves)" in result.output


def test_plan_prints_waves(project, runner):
    (project / "gateci.yml").write_text(GOOD)
    result = runner.invoke(cli, ["plan"])
    assert result.exit_code == 0
    assert "wave 1: build" in result.output
    assert "wave 2: deploy" in result.output


def test_run_succeeds_and_writes_report(project, runner):
    (project / "gateci.yml").write_text(GOOD)
    result = runner.invoke(
        cli,
        ["run", "--secret", "DEPLOY_TOKEN=tok-987", "--report", "out/report.json", "--workers", "2"],
    )
    assert result.exit_code == 0, result.output
    assert "tok-987" not in result.output

    report = json.loads((project / "out" / "report.json").read_text())
    assert report["status"] == "succeeded"
    assert report["exit_code"] == 0
    assert report["jobs"]["deploy"]["status"] == "succeeded"
    assert [a["name"] for a in report["artifacts"]] == ["bundle"]


def test_run_secret_from_environment(project, runner, monkeypatch):
    (project / "gateci.yml").write_text(GOOD)
    monkeypatch.setenv("DEPLOY_TOKEN", "from-env")
    result = runner.invoke(cli, ["run", "--secret-env", "DEPLOY_TOKEN"])
    assert result.exit_code == 0, result.output


def test_run_failure_exit_code(project, runner):
    (project / "gateci.yml").write_text(FAILING)
    result = runner.invoke(cli, ["run", "--report", "report.json"])
    assert result.exit_code == 1
    report = json.loads((project / "report.json").read_text())
    assert report["jobs"]["build"]["status"] == "failed"
    assert report["jobs"]["deploy"]["status"] == "skipped"
    assert report["root_cause"]["job"] == "build"


def test_missing_secret_fails_the_job(project, runner):
    (project / "gateci.yml").write_text(GOOD)
    result = runner.invoke(cli, ["run"])
    assert result.exit_code == 1
    assert "DEPLOY_TOKEN" in result.output


def test_invalid_definition_exit_code(project, runner):
    (project / "gateci.yml").write_text("jobs: {a: {steps: [{run: x}], needs: [ghost]}}")
    result = runner.invoke(cli, ["run"])
    assert result.exit_code == 2
    assert "ghost" in result.output


def test_broken_python_workflow_exit_code(project, runner):
    (project / "gateci_workflow.py").write_text(dedent(
        """
        from gateci import job

        def workflow():
            return [job("b")]
        """
    ))
    result = runner.invoke(cli, ["validate"])
    assert result.exit_code == 2
    assert "Invalid pipeline" in result.output
    assert "at least one step" in result.output


def test_cycle_exit_code(project, runner):
    (project / "gateci.yml").write_text(
        "jobs: {a: {needs: b, steps: [{run: x}]}, b: {needs: a, steps: [{run: x}]}}"
    )
    result = runner.invoke(cli, ["validate"])
    assert result.exit_code == 2
    assert "cycle" in result.output


def test_no_pipeline_found(project, runner):
    result = runner.invoke(cli, ["validate"])
    assert result.exit_code == 2
    assert "No pipeline file found" in result.output


def test_several_pipelines_need_explicit_choice(project, runner):
    (project / "gateci.yml").write_text(GOOD)
    (project / "nightly_pipeline.yml").write_text(GOOD)
    result = runner.invoke(cli, ["validate"])
    assert result.exit_code == 2
    assert "Multiple pipeline files found" in result.output

    result = runner.invoke(cli, ["validate", "--workflow", "nightly_pipeline.yml"])
    assert result.exit_code == 0


def test_bad_secret_option(project, runner):
    (project / "gateci.yml").write_text(GOOD)
    result = runner.invoke(cli, ["run", "--secret", "NOVALUE"])
    assert result.exit_code == 2


def test_artifacts_list_and_prune(project, runner):
    (project / "gateci.yml").write_text(GOOD)
    for run_id in ("run-a", "run-b"):
        result = runner.invoke(cli, ["run", "--secret", "DEPLOY_TOKEN=x", "--run-id", run_id])
        assert result.exit_code == 0, result.output

    listed = runner.invoke(cli, ["artifacts", "list"])
    assert listed.exit_code == 0
    assert "run-a" in listed.output and "run-b" in listed.output
    assert "build/bundle" in listed.output

    pruned = runner.invoke(cli, ["artifacts", "prune", "--keep", "1"])
    assert pruned.exit_code == 0
    assert "Released 1 run(s)" in pruned.output

    listed = runner.invoke(cli, ["artifacts", "list"])
    assert "run-a" not in listed.output
    assert "run-b" in listed.output
