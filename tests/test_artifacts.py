import pytest

from gateci.artifacts import ArtifactStore, pack_path, unpack
from gateci.errors import ArtifactNotFoundError, ArtifactStoreError


def test_put_and_get(store):
    ref = store.put("run-1", "build", "bundle", b"payload")
    assert ref.size == 7
    assert ref.run_id == "run-1" and ref.job_id == "build"
    assert store.get(ref) == b"payload"
    assert store.blob_path(ref.digest).exists()


def test_identical_content_shares_one_blob(store):
    a = store.put("run-1", "build", "bundle", b"same")
    b = store.put("run-2", "other", "copy", b"same")
    assert a.digest == b.digest
    blobs = [p for p in store.root.joinpath("blobs").glob("*/*") if not p.name.startswith(".")]
    assert len(blobs) == 1


def test_refs_are_indexed_per_run(store):
    store.put("run-1", "build", "bundle", b"one")
    store.put("run-1", "test", "junit", b"two")
    names = sorted(r.name for r in store.refs("run-1"))
    assert names == ["bundle", "junit"]
    assert store.refs("unknown-run") == []


def test_release_keeps_blobs_other_runs_reference(store):
    shared = store.put("run-1", "build", "bundle", b"shared")
    only_one = store.put("run-1", "build", "logs", b"only in run-1")
    store.put("run-2", "build", "bundle", b"shared")

    removed = store.release("run-1")

    assert removed == [only_one.digest]
    assert store.get(shared) == b"shared"
    with pytest.raises(ArtifactNotFoundError):
        store.get(only_one)


def test_retained_run_without_artifacts_is_listed(store):
    store.retain("run-1")
    assert [r for r, _ in store.runs()] == ["run-1"]


def test_prune_keeps_newest_runs(store):
    for i in range(4):
        store.put(f"run-{i}", "build", "bundle", f"payload {i}".encode())
    released = store.prune(keep=2)
    assert released == ["run-0", "run-1"]
    assert [r for r, _ in store.runs()] == ["run-2", "run-3"]


def test_corrupted_blob_is_detected(store):
    ref = store.put("run-1", "build", "bundle", b"good bytes")
    store.blob_path(ref.digest).write_bytes(b"tampered")
    with pytest.raises(ArtifactNotFoundError) as exc:
        store.get(ref)
    assert exc.value.reason == "is corrupted"


def test_unreadable_index_is_a_store_error(store):
    store.root.joinpath("runs", "broken.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ArtifactStoreError):
        store.refs("broken")


def test_store_unavailable(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    with pytest.raises(ArtifactStoreError):
        ArtifactStore(blocker / "store")


def test_directory_payload_is_deterministic(tmp_path):
    for where in ("one", "two"):
        d = tmp_path / where / "dist"
        (d / "js").mkdir(parents=True)
        (d / "index.html").write_text("<html/>")
        (d / "js" / "app.js").write_text("run()")

    data_one, kind = pack_path(tmp_path / "one" / "dist")
    data_two, _ = pack_path(tmp_path / "two" / "dist")
    assert kind == "dir"
    assert data_one == data_two


def test_directory_round_trip_through_store(store, tmp_path):
    src = tmp_path / "dist"
    (src / "js").mkdir(parents=True)
    (src / "js" / "app.js").write_text("run()")

    data, kind = pack_path(src)
    ref = store.put("run-1", "build", "bundle", data, kind=kind, path="dist")
    out = unpack(ref, store.get(ref), tmp_path / "restored")

    assert (out / "js" / "app.js").read_text() == "run()"


def test_pack_missing_path(tmp_path):
    with pytest.raises(FileNotFoundError):
        pack_path(tmp_path / "nope")
