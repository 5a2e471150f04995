# archive.py
"""
Archive container access for fluidpkg.

An archive holds two top-level directories:
  package/manifest.json  - package metadata
  data/...               - files installed relative to the package root

The engine only needs `entries()`: a list of ArchiveEntry with a path and
an `open()` returning a binary stream. ZipArchive reads .zip containers;
MemoryArchive builds one in-process.
"""

from __future__ import annotations

import io
import json
import os
import posixpath
import zipfile
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from fluidpkg.modules.errors import ArchiveError, UnsafeArchivePath

MANIFEST_ENTRY = "package/manifest.json"
DATA_PREFIX = "data/"


@dataclass(frozen=True)
class ArchiveEntry:
    path: str
    opener: Callable[[], io.BufferedIOBase]
    is_dir: bool = False

    def open(self):
        return self.opener()

    def read(self) -> bytes:
        with self.open() as f:
            return f.read()


class Archive:
    """Base archive: subclasses provide entries()."""

    location: Optional[str] = None

    def entries(self) -> List[ArchiveEntry]:
        raise NotImplementedError

    def find(self, path: str) -> Optional[ArchiveEntry]:
        for entry in self.entries():
            if entry.path == path:
                return entry
        return None

    def data_entries(self) -> Dict[str, ArchiveEntry]:
        """Root-relative path -> entry for every file under data/."""
        out: Dict[str, ArchiveEntry] = {}
        for entry in self.entries():
            if entry.is_dir or not entry.path.startswith(DATA_PREFIX):
                continue
            rel = normalize_data_path(entry.path[len(DATA_PREFIX):])
            if rel in out:
                raise ArchiveError(f"Duplicate data entry: {entry.path}")
            out[rel] = entry
        return out

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def normalize_data_path(rel: str) -> str:
    """Validate and normalize a root-relative path taken from an archive."""
    if not rel or rel.startswith("/") or "\\" in rel or ":" in rel.split("/", 1)[0]:
        raise UnsafeArchivePath(rel)
    norm = posixpath.normpath(rel)
    if norm in (".", "") or norm == ".." or norm.startswith("../"):
        raise UnsafeArchivePath(rel)
    return norm


class ZipArchive(Archive):
    def __init__(self, path: str):
        self.location = os.path.abspath(path)
        try:
            self._zip = zipfile.ZipFile(path)
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveError(f"Cannot open archive {path}: {e}") from e

    def entries(self) -> List[ArchiveEntry]:
        out = []
        for info in self._zip.infolist():
            out.append(ArchiveEntry(
                path=info.filename,
                opener=lambda info=info: self._zip.open(info),
                is_dir=info.is_dir(),
            ))
        return out

    def close(self):
        self._zip.close()


class MemoryArchive(Archive):
    """Archive built from a {path: bytes} mapping."""

    def __init__(self, files: Dict[str, bytes], location: Optional[str] = None):
        self._files = dict(files)
        self.location = location

    def entries(self) -> List[ArchiveEntry]:
        return [
            ArchiveEntry(path=p, opener=lambda data=data: io.BytesIO(data), is_dir=p.endswith("/"))
            for p, data in self._files.items()
        ]


def open_archive(path: str) -> Archive:
    if not os.path.isfile(path):
        raise ArchiveError(f"Archive not found: {path}")
    return ZipArchive(path)


def write_zip(path: str, manifest: dict, files: Dict[str, bytes]) -> str:
    """Write a package archive: `files` are root-relative paths under data/."""
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(MANIFEST_ENTRY, json.dumps(manifest, indent=2))
        for rel, data in files.items():
            zf.writestr(DATA_PREFIX + rel, data)
    return path
