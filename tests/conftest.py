from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import pytest

from gateci.adapters import Adapter, AdapterRegistry, RawResult, default_registry
from gateci.artifacts import ArtifactStore
from gateci.dag import JobGraph
from gateci.engine import PipelineEngine
from gateci.gates import GateResult
from gateci.model import Job
from gateci.secret_store import SecretStore
from gateci.settings import EngineSettings
from gateci.ui.console import Console, set_console


class StaticGateAdapter(Adapter):
    """Scanner stand-in that reports a preset GateResult."""

    name = "static-gate"
    optional_params = frozenset({"label"})
    reports_gate = True

    def __init__(self, result: GateResult, exit_code: int = 0):
        self.result = result
        self.exit_code = exit_code
        self.calls = 0

    def invoke(self, params, secrets, call):
        self.calls += 1
        call.log.write(f"static gate: {self.result.outcome.value}\n")
        return RawResult(self.exit_code, gate=self.result)


class RecordingAdapter(Adapter):
    """Remembers what it was invoked with."""

    name = "record"
    optional_params = frozenset({"value"})

    def __init__(self):
        self.seen_params: List[dict] = []
        self.seen_secrets: List[dict] = []

    def invoke(self, params, secrets, call):
        self.seen_params.append(dict(params))
        self.seen_secrets.append(dict(secrets))
        return RawResult(0)


@pytest.fixture(autouse=True)
def fresh_console():
    set_console(Console())
    yield
    set_console(Console())


@pytest.fixture
def markers(tmp_path) -> Path:
    """Directory steps write marker files into (absolute path)."""
    d = tmp_path / "markers"
    d.mkdir()
    return d


@pytest.fixture
def source_tree(tmp_path) -> Path:
    src = tmp_path / "src"
    (src / "app").mkdir(parents=True)
    (src / "app" / "main.js").write_text("console.log('hi')\n", encoding="utf-8")
    (src / "package.json").write_text('{"name": "demo"}\n', encoding="utf-8")
    return src


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    return EngineSettings(
        work_dir=str(tmp_path / "runs"),
        artifact_dir=str(tmp_path / "artifacts"),
        max_workers=4,
        step_timeout=30,
        cancel_grace=0.5,
    )


@pytest.fixture
def store(tmp_path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def registry_with():
    """Default adapters plus the given test adapters."""
    def factory(*extra: Adapter) -> AdapterRegistry:
        registry = default_registry()
        for adapter in extra:
            registry.register(adapter)
        return registry
    return factory


@pytest.fixture
def make_engine(settings, store, source_tree):
    def factory(
        jobs: List[Job],
        *,
        secrets: Optional[SecretStore] = None,
        adapters: Optional[AdapterRegistry] = None,
        artifact_store: Optional[ArtifactStore] = None,
        **overrides,
    ) -> PipelineEngine:
        registry = adapters or default_registry()
        graph = JobGraph.build(jobs, registry)
        return PipelineEngine(
            graph,
            pipeline="test-pipeline",
            settings=settings.override(**overrides),
            secrets=secrets,
            adapters=registry,
            store=artifact_store or store,
            source_root=source_tree,
        )
    return factory
