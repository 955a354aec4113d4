# artifacts.py
from __future__ import annotations

import json
import os
import re
import tarfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List

from .errors import ArtifactExistsError, ArtifactNotFoundError

# ---------------------------------------------------------------------
# Artifacts are named tar.gz bundles shared between the jobs of a run:
#
#   root/
#     <run_id>/
#       <name>.tar.gz          (appears atomically once complete)
#       <name>.manifest.json   (created first, exclusively: reserves the name)
#
# A name can be written once per run and read any number of times.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACTS_DIR = ".triggerci/artifacts"

DEFAULT_EXCLUDES = [
    ".git/**",
    ".triggerci/**",
    "**/__pycache__/**",
    "**/*.pyc",
]

_NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


@dataclass(frozen=True)
class ArtifactInfo:
    name: str
    files: List[str]
    size: int
    created_at_unix: int


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _excluded(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _collect(base: Path, paths: Iterable[str], excludes: List[str]) -> List[Path]:
    files: List[Path] = []
    for entry in paths:
        entry = entry.strip()
        if not entry:
            continue
        matches = [base / entry] if (base / entry).exists() else sorted(base.glob(entry))
        for src in matches:
            candidates = [src] if src.is_file() else list(_iter_files_under(src))
            for f in candidates:
                if not _excluded(_relpath(f, base), excludes) and f not in files:
                    files.append(f)
    return files


def validate_name(name: str) -> str:
    if not _NAME_RE.fullmatch(name or ""):
        raise ValueError(f"invalid artifact name: {name!r}")
    return name


class ArtifactStore:
    """File-backed, write-once artifact store."""

    def __init__(self, root: str | Path = DEFAULT_ARTIFACTS_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def for_run(self, run_id: str) -> ArtifactStore:
        """The store holding one run's artifacts, under `root/<run_id>/`."""
        if not _NAME_RE.fullmatch(run_id or ""):
            raise ValueError(f"invalid run id: {run_id!r}")
        return ArtifactStore(self.root / run_id)

    def artifact_path(self, name: str) -> Path:
        return self.root / f"{validate_name(name)}.tar.gz"

    def manifest_path(self, name: str) -> Path:
        return self.root / f"{validate_name(name)}.manifest.json"

    def exists(self, name: str) -> bool:
        return self.artifact_path(name).exists()

    def names(self) -> List[str]:
        return sorted(p.name[: -len(".tar.gz")] for p in self.root.glob("*.tar.gz"))

    def _reserve(self, name: str) -> None:
        try:
            fd = os.open(self.manifest_path(name), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise ArtifactExistsError(f"artifact '{name}' already exists") from None
        os.close(fd)

    def upload(self, name: str, paths: Iterable[str], *, base: str | Path = ".") -> ArtifactInfo:
        """
        Bundle `paths` (files, directories or globs relative to `base`) under
        `name`. Raises ArtifactExistsError if the name was already used.
        """
        base_p = Path(base).resolve()
        files = _collect(base_p, paths, DEFAULT_EXCLUDES)
        if not files:
            raise ArtifactNotFoundError(f"no files matched for artifact '{name}'")

        with self._lock:
            self._reserve(name)

        art = self.artifact_path(name)
        tmp = art.with_suffix(".gz.tmp")
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for f in files:
                    tar.add(str(f), arcname=_relpath(f, base_p), recursive=False)

            info = ArtifactInfo(
                name=name,
                files=[_relpath(f, base_p) for f in files],
                size=tmp.stat().st_size,
                created_at_unix=int(time.time()),
            )
            self.manifest_path(name).write_text(
                json.dumps(info.__dict__, sort_keys=True, indent=2), encoding="utf-8"
            )
            # the bundle becomes visible last, in one rename
            tmp.replace(art)
        except BaseException:
            self.manifest_path(name).unlink(missing_ok=True)
            raise
        finally:
            tmp.unlink(missing_ok=True)
        return info

    def info(self, name: str) -> ArtifactInfo:
        if not self.exists(name):
            raise ArtifactNotFoundError(f"artifact '{name}' not found")
        data: Dict = json.loads(self.manifest_path(name).read_text(encoding="utf-8") or "{}")
        return ArtifactInfo(**data)

    def download(self, name: str, dest: str | Path = ".") -> List[str]:
        """Extract an artifact into `dest`; returns the extracted relative paths."""
        art = self.artifact_path(name)
        if not art.exists():
            raise ArtifactNotFoundError(f"artifact '{name}' not found")

        dest_p = Path(dest).resolve()
        dest_p.mkdir(parents=True, exist_ok=True)
        with tarfile.open(str(art), mode="r:gz") as tar:
            members = tar.getmembers()
            for m in members:
                target = (dest_p / m.name).resolve()
                if not m.isfile() or dest_p not in target.parents:
                    raise ValueError(f"refusing to extract {m.name!r} from artifact '{name}'")
            if hasattr(tarfile, "data_filter"):
                tar.extractall(path=str(dest_p), members=members, filter="data")
            else:
                tar.extractall(path=str(dest_p), members=members)
        return [m.name for m in members]
