# artifacts.py
from __future__ import annotations

import hashlib
import io
import json
import os
import tarfile
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import ArtifactNotFoundError, ArtifactStoreError

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Content-addressed artifact store:
#   blob key = sha256(payload)
#   identical payloads (even from different jobs/runs) share one blob
#
# Layout:
#   root/
#     blobs/<aa>/<sha256>          immutable payloads
#     runs/<run_id>.json           retention index: refs produced by a run
#
# A blob may only be removed once no retained run references its digest.
# Directories are stored as deterministic tar payloads so equal trees
# produce equal digests.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACT_DIR = ".gateci/artifacts"


@dataclass(frozen=True)
class ArtifactRef:
    digest: str
    name: str
    run_id: str
    job_id: str
    size: int
    kind: str = "file"  # "file" | "dir"
    path: Optional[str] = None  # where the producer found it, relative to its workspace

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> ArtifactRef:
        return cls(
            digest=data["digest"],
            name=data["name"],
            run_id=data["run_id"],
            job_id=data["job_id"],
            size=int(data["size"]),
            kind=data.get("kind", "file"),
            path=data.get("path"),
        )


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False)


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def pack_path(path: str | Path) -> Tuple[bytes, str]:
    """
    Turn a workspace path into (payload, kind).
      - file: raw bytes
      - dir:  uncompressed tar with normalized metadata (mtime/uid/gid = 0)
    """
    p = Path(path)
    if p.is_file():
        return p.read_bytes(), "file"
    if not p.is_dir():
        raise FileNotFoundError(f"Artifact path not found: {p}")

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for f in _iter_files_under(p):
            rel = f.relative_to(p).as_posix()
            info = tarfile.TarInfo(name=rel)
            data = f.read_bytes()
            info.size = len(data)
            info.mtime = 0
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            info.mode = 0o755 if os.access(f, os.X_OK) else 0o644
            tar.addfile(info, fileobj=io.BytesIO(data))
    return buf.getvalue(), "dir"


def unpack(ref: ArtifactRef, data: bytes, dest: str | Path) -> Path:
    """Materialize a payload at `dest` (a file path, or a directory for kind=dir)."""
    dest = Path(dest)
    if ref.kind == "dir":
        dest.mkdir(parents=True, exist_ok=True)
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            tar.extractall(path=str(dest), filter="data")
        return dest

    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(data)
    return dest


class ArtifactStore:
    """
    File-based, content-addressed store shared by every worker of a run.

    Writes are insert-if-absent by digest (temp file + atomic rename) and
    the retention index is guarded by a single lock, so concurrent puts
    from different jobs are safe.
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self._lock = threading.Lock()
        try:
            (self.root / "blobs").mkdir(parents=True, exist_ok=True)
            (self.root / "runs").mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactStoreError(f"Artifact store unavailable at {self.root}: {e}") from e

    # ---- paths ----
    def blob_path(self, digest: str) -> Path:
        return self.root / "blobs" / digest[:2] / digest

    def _index_path(self, run_id: str) -> Path:
        return self.root / "runs" / f"{run_id}.json"

    # ---- index helpers (call with lock held) ----
    def _read_index(self, run_id: str) -> Optional[Dict]:
        p = self._index_path(run_id)
        if not p.exists():
            return None
        try:
            return json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ArtifactStoreError(f"Unreadable run index {p.name}: {e}") from e

    def _write_index(self, run_id: str, index: Dict) -> None:
        p = self._index_path(run_id)
        tmp = p.with_name(f".{p.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_text(_json_dumps_stable(index), encoding="utf-8")
            tmp.replace(p)
        except OSError as e:
            raise ArtifactStoreError(f"Cannot write run index {p.name}: {e}") from e
        finally:
            tmp.unlink(missing_ok=True)

    def _ensure_index(self, run_id: str) -> Dict:
        index = self._read_index(run_id)
        if index is None:
            index = {"run_id": run_id, "created_at": time.time(), "artifacts": []}
            self._write_index(run_id, index)
        return index

    # ---- public API ----
    def retain(self, run_id: str) -> None:
        """Register a run as live; its artifacts are kept until release()."""
        with self._lock:
            self._ensure_index(run_id)

    def put(
        self,
        run_id: str,
        job_id: str,
        name: str,
        data: bytes,
        *,
        kind: str = "file",
        path: Optional[str] = None,
    ) -> ArtifactRef:
        digest = _sha256_bytes(data)
        ref = ArtifactRef(
            digest=digest,
            name=name,
            run_id=run_id,
            job_id=job_id,
            size=len(data),
            kind=kind,
            path=path,
        )

        with self._lock:
            blob = self.blob_path(digest)
            try:
                if not blob.exists():
                    blob.parent.mkdir(parents=True, exist_ok=True)
                    tmp = blob.with_name(f".{digest}.{uuid.uuid4().hex}.tmp")
                    try:
                        tmp.write_bytes(data)
                        tmp.replace(blob)
                    finally:
                        tmp.unlink(missing_ok=True)
            except OSError as e:
                raise ArtifactStoreError(f"Cannot store artifact '{name}': {e}") from e

            index = self._ensure_index(run_id)
            index["artifacts"] = [
                a for a in index["artifacts"]
                if not (a["job_id"] == job_id and a["name"] == name)
            ]
            index["artifacts"].append(ref.to_dict())
            self._write_index(run_id, index)

        return ref

    def get(self, ref: ArtifactRef) -> bytes:
        blob = self.blob_path(ref.digest)
        try:
            data = blob.read_bytes()
        except FileNotFoundError:
            raise ArtifactNotFoundError(digest=ref.digest, name=ref.name) from None
        except OSError as e:
            raise ArtifactStoreError(f"Cannot read artifact '{ref.name}': {e}") from e

        if _sha256_bytes(data) != ref.digest:
            raise ArtifactNotFoundError(digest=ref.digest, name=ref.name, reason="is corrupted")
        return data

    def refs(self, run_id: str) -> List[ArtifactRef]:
        with self._lock:
            index = self._read_index(run_id)
        if index is None:
            return []
        return [ArtifactRef.from_dict(a) for a in index["artifacts"]]

    def runs(self) -> List[Tuple[str, float]]:
        """Retained runs as (run_id, created_at), oldest first."""
        out: List[Tuple[str, float]] = []
        with self._lock:
            for p in self.root.joinpath("runs").glob("*.json"):
                index = self._read_index(p.stem)
                if index is not None:
                    out.append((index["run_id"], float(index.get("created_at", 0))))
        return sorted(out, key=lambda r: r[1])

    def release(self, run_id: str) -> List[str]:
        """
        Drop a run's references, then delete blobs no retained run still
        references. Returns the removed digests.
        """
        with self._lock:
            self._index_path(run_id).unlink(missing_ok=True)

            live: set[str] = set()
            for p in self.root.joinpath("runs").glob("*.json"):
                index = self._read_index(p.stem) or {}
                live.update(a["digest"] for a in index.get("artifacts", []))

            removed: List[str] = []
            for blob in self.root.joinpath("blobs").glob("*/*"):
                if blob.name.startswith("."):
                    continue
                if blob.name not in live:
                    blob.unlink(missing_ok=True)
                    removed.append(blob.name)
        return sorted(removed)

    def prune(self, keep: int = 5) -> List[str]:
        """Keep only the newest N runs. Returns the released run ids."""
        runs = self.runs()
        victims = [run_id for run_id, _ in runs[: max(0, len(runs) - keep)]]
        for run_id in victims:
            self.release(run_id)
        return victims
