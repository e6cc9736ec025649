# artifacts.py
from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import DuplicateArtifactError
from .model import Artifact, payload_digest

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Artifacts live in per-run namespaces:
#   runs[run_id][name] -> [ArtifactRecord(platform_tag, filename, digest, produced_by)]
#
# Payloads are content-addressed: a blob is stored once per sha256 digest and
# reference-counted, so two platforms (or two runs) shipping identical bytes
# share storage.
#
# Within a run the store is append-only: the same (name, platform_tag,
# filename) can only be put once. Different platform tags under one name
# accumulate; get_all returns their union.
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class ArtifactRecord:
    name: str
    produced_by: str
    digest: str
    platform_tag: Optional[str]
    filename: Optional[str]

    @property
    def identity(self) -> Tuple[Optional[str], Optional[str]]:
        return self.platform_tag, self.filename


def _tag_key(tag: Optional[str]) -> str:
    return tag or ""


class ArtifactStore:
    """In-process, thread-safe artifact holding area shared by all runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, Dict[str, List[ArtifactRecord]]] = {}
        self._blobs: Dict[str, bytes] = {}
        self._refs: Dict[str, int] = defaultdict(int)

    # -- writes ---------------------------------------------------------

    def put(
        self,
        run_id: str,
        name: str,
        platform_tag: Optional[str],
        blob: bytes,
        *,
        produced_by: str = "",
        filename: Optional[str] = None,
    ) -> Artifact:
        digest = payload_digest(blob)
        record = ArtifactRecord(
            name=name,
            produced_by=produced_by,
            digest=digest,
            platform_tag=platform_tag,
            filename=filename,
        )
        with self._lock:
            entries = self._runs.setdefault(run_id, {}).setdefault(name, [])
            if any(e.identity == record.identity for e in entries):
                raise DuplicateArtifactError(produced_by, name, platform_tag, filename)
            entries.append(record)
            self._blobs.setdefault(digest, bytes(blob))
            self._refs[digest] += 1
        return self._materialize(record)

    def expire(self, run_id: str) -> int:
        """Drop a run's namespace; returns how many artifacts were released."""
        with self._lock:
            names = self._runs.pop(run_id, {})
            released = 0
            for entries in names.values():
                for e in entries:
                    released += 1
                    self._refs[e.digest] -= 1
                    if self._refs[e.digest] <= 0:
                        del self._refs[e.digest]
                        self._blobs.pop(e.digest, None)
            return released

    # -- reads ----------------------------------------------------------

    def _materialize(self, record: ArtifactRecord) -> Artifact:
        return Artifact(
            name=record.name,
            produced_by=record.produced_by,
            payload=self._blobs[record.digest],
            platform_tag=record.platform_tag,
            filename=record.filename,
        )

    def artifacts(self, run_id: str, name: str) -> List[Artifact]:
        with self._lock:
            entries = list(self._runs.get(run_id, {}).get(name, []))
            entries.sort(key=lambda e: (_tag_key(e.platform_tag), e.filename or ""))
            return [self._materialize(e) for e in entries]

    def get_all(self, run_id: str, name: str) -> List[Tuple[Optional[str], bytes]]:
        """Union of every instance that stored `name`, ordered by platform tag."""
        return [(a.platform_tag, a.payload) for a in self.artifacts(run_id, name)]

    def names(self, run_id: str) -> List[str]:
        with self._lock:
            return sorted(self._runs.get(run_id, {}).keys())

    def merge(self, run_id: str, names: Optional[Iterable[str]] = None) -> Dict[str, List[Artifact]]:
        """Collect-then-combine: every requested name with all its platform entries."""
        wanted = list(names) if names is not None else self.names(run_id)
        return {n: self.artifacts(run_id, n) for n in wanted}

    def blob_count(self) -> int:
        with self._lock:
            return len(self._blobs)

    def for_run(self, run_id: str) -> RunArtifacts:
        return RunArtifacts(self, run_id)


class RunArtifacts:
    """Run-scoped view: put(name, platform_tag, blob) / get_all(name)."""

    def __init__(self, store: ArtifactStore, run_id: str):
        self.store = store
        self.run_id = run_id

    def put(self, name: str, platform_tag: Optional[str], blob: bytes, **kw) -> Artifact:
        return self.store.put(self.run_id, name, platform_tag, blob, **kw)

    def get_all(self, name: str) -> List[Tuple[Optional[str], bytes]]:
        return self.store.get_all(self.run_id, name)

    def merge(self, names: Optional[Iterable[str]] = None) -> Dict[str, List[Artifact]]:
        return self.store.merge(self.run_id, names)


def materialize(merged: Dict[str, List[Artifact]], dest: str | Path) -> Path:
    """
    Write a merged artifact set to disk:
      dest/<name>/<platform_tag>/<filename>
    Untagged artifacts go straight under dest/<name>/.
    """
    root = Path(dest)
    root.mkdir(parents=True, exist_ok=True)
    for name, items in merged.items():
        for a in items:
            folder = root / name
            if a.platform_tag:
                folder = folder / a.platform_tag
            folder.mkdir(parents=True, exist_ok=True)
            filename = a.filename or f"{name}.bin"
            (folder / filename).write_bytes(a.payload)
    return root
