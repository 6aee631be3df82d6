# gateci_workflow.py
# Pipeline for gateci itself: install, test, then package the sources.
from __future__ import annotations

from gateci.dsl import checkout, job, sh, wf


def workflow():
    return wf(
        job(
            "install",
            checkout(),
            sh("Install package", "pip install -e '.[test]'"),
        ),
        job(
            "test",
            checkout(),
            sh("Run pytest", "pytest -q"),
            needs=["install"],
        ),
        job(
            "package",
            checkout(),
            sh("Build sdist", "mkdir -p dist && tar czf dist/gateci-src.tar.gz src pyproject.toml"),
            needs=["test"],
            outputs={"sdist": "dist"},
        ),
    )
