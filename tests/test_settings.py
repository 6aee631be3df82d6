from gateci.settings import EngineSettings
from gateci.steps import DEFAULT_PASSTHROUGH_ENV


def test_defaults():
    s = EngineSettings.from_env({})
    assert s.work_dir == ".gateci/runs"
    assert s.artifact_dir == ".gateci/artifacts"
    assert s.fail_fast is False
    assert s.keep_runs == 5
    assert s.passthrough_env == DEFAULT_PASSTHROUGH_ENV
    assert s.workers() >= 1


def test_environment_overrides():
    s = EngineSettings.from_env({
        "GATECI_WORK_DIR": "/tmp/w",
        "GATECI_WORKERS": "3",
        "GATECI_STEP_TIMEOUT": "90",
        "GATECI_CANCEL_GRACE": "2.5",
        "GATECI_FAIL_FAST": "yes",
        "GATECI_KEEP_RUNS": "9",
        "GATECI_PASSTHROUGH_ENV": "PATH, JAVA_HOME",
    })
    assert s.work_dir == "/tmp/w"
    assert s.workers() == 3
    assert s.step_timeout == 90.0
    assert s.cancel_grace == 2.5
    assert s.fail_fast is True
    assert s.keep_runs == 9
    assert s.passthrough_env == ("PATH", "JAVA_HOME")


def test_override_ignores_unset_options():
    s = EngineSettings(max_workers=2).override(max_workers=None, fail_fast=True)
    assert s.max_workers == 2
    assert s.fail_fast is True


def test_zero_keep_runs_is_respected():
    assert EngineSettings.from_env({"GATECI_KEEP_RUNS": "0"}).keep_runs == 0
    assert EngineSettings.from_env({"GATECI_KEEP_RUNS": ""}).keep_runs == 5
