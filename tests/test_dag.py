import pytest

from gateci.adapters import default_registry
from gateci.dag import JobGraph
from gateci.dsl import gate, job, sh, use
from gateci.errors import (
    CycleError,
    DefinitionError,
    DuplicateJobError,
    UnknownArtifactError,
    UnknownDependencyError,
)


def echo(name):
    return sh(name, f"echo {name}")


def test_batches_follow_dependencies():
    graph = JobGraph.build([
        job("checkout", echo("c")),
        job("lint", echo("l"), needs=["checkout"]),
        job("test", echo("t"), needs=["checkout"]),
        job("package", echo("p"), needs=["lint", "test"]),
        job("docs", echo("d")),
    ])
    assert graph.topological_batches() == [
        {"checkout", "docs"},
        {"lint", "test"},
        {"package"},
    ]


def test_batches_partition_every_job_once():
    jobs = [job(f"j{i}", echo("x"), needs=[f"j{i - 1}"] if i else []) for i in range(6)]
    jobs.append(job("side", echo("s"), needs=["j2"]))
    batches = JobGraph.build(jobs).topological_batches()

    seen = [n for b in batches for n in b]
    assert sorted(seen) == sorted(j.name for j in jobs)
    position = {n: i for i, b in enumerate(batches) for n in b}
    for j in jobs:
        for dep in j.needs:
            assert position[dep] < position[j.name]


def test_cycle_is_reported_with_path():
    with pytest.raises(CycleError) as exc:
        JobGraph.build([
            job("a", echo("a"), needs=["c"]),
            job("b", echo("b"), needs=["a"]),
            job("c", echo("c"), needs=["b"]),
        ])
    cycle = exc.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "->" in str(exc.value)


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleError):
        JobGraph.build([job("a", echo("a"), needs=["a"])])


def test_unknown_dependency():
    with pytest.raises(UnknownDependencyError) as exc:
        JobGraph.build([job("deploy", echo("d"), needs=["build"])])
    assert exc.value.dependency == "build"
    assert exc.value.job == "deploy"


def test_duplicate_job_names():
    with pytest.raises(DuplicateJobError) as exc:
        JobGraph.build([job("a", echo("1")), job("a", echo("2"))])
    assert exc.value.names == ["a"]


def test_definition_errors_share_a_base():
    assert issubclass(CycleError, DefinitionError)
    assert issubclass(UnknownArtifactError, DefinitionError)


def test_input_must_come_from_upstream_job():
    with pytest.raises(UnknownArtifactError):
        JobGraph.build([
            job("build", echo("b"), outputs={"bundle": "dist"}),
            # no needs: build is not upstream
            job("deploy", echo("d"), inputs=["bundle"]),
        ])


def test_input_from_transitive_upstream_is_accepted():
    graph = JobGraph.build([
        job("build", echo("b"), outputs={"bundle": "dist"}),
        job("scan", echo("s"), needs=["build"]),
        job("deploy", echo("d"), needs=["scan"], inputs=["bundle"]),
    ])
    assert graph.producer_of("deploy", "bundle") == "build"


def test_ambiguous_input_is_rejected():
    with pytest.raises(DefinitionError, match="several upstream jobs"):
        JobGraph.build([
            job("a", echo("a"), outputs={"bundle": "dist"}),
            job("b", echo("b"), outputs={"bundle": "out"}),
            job("deploy", echo("d"), needs=["a", "b"], inputs=["bundle"]),
        ])


def test_unknown_adapter_rejected_at_build_time():
    with pytest.raises(DefinitionError, match="unknown adapter"):
        JobGraph.build([job("x", use("Upload", "s3-upload"))], default_registry())


def test_missing_adapter_param_rejected():
    with pytest.raises(DefinitionError, match="missing required params"):
        JobGraph.build([job("x", use("Deploy", "deploy", command="echo"))], default_registry())


def test_unknown_adapter_param_rejected():
    with pytest.raises(DefinitionError, match="unknown params"):
        JobGraph.build([job("x", use("Build", "build", command="make", flavour="x"))], default_registry())


def test_gate_on_adapter_without_gate_result_rejected():
    step = use("Build", "build", command="make", gate=gate(blocking=["bugs"]))
    with pytest.raises(DefinitionError, match="reports no gate result"):
        JobGraph.build([job("x", step)], default_registry())


def test_downstream_and_upstream():
    graph = JobGraph.build([
        job("a", echo("a")),
        job("b", echo("b"), needs=["a"]),
        job("c", echo("c"), needs=["b"]),
        job("d", echo("d")),
    ])
    assert graph.downstream("a") == {"b", "c"}
    assert graph.upstream("c") == {"a", "b"}
    assert graph.dependents("a") == {"b"}
    assert graph.downstream("d") == set()
    assert "a" in graph and len(graph) == 4
