# database.py
"""
Installed-package database (one per package root).

Layout under <root>/<marker>/db/:
  <name>.installed.json  - full record of one installed package, files included
  journal.json           - the in-flight operation, present only until it commits

A record and its file list live in the same document and are replaced with a
single os.replace, so readers never see one without the other. Cross-record
invariants (unique file ownership, conflicts, dependencies) are enforced by
the resolver and the installer before put()/delete() are issued.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fluidpkg.modules import config, log, utils
from fluidpkg.modules import constraint as cons
from fluidpkg.modules.constraint import Constraint
from fluidpkg.modules.errors import DatabaseError, FluidpkgError, NotInstalled
from fluidpkg.modules.manifest import DESCRIPTIVE_FIELDS, Manifest

logger = log.get_logger("database")

RECORD_SUFFIX = ".installed.json"
JOURNAL_NAME = "journal.json"
SCHEMA = 1


@dataclass(frozen=True)
class FileEntry:
    path: str
    digest: str


@dataclass(frozen=True)
class InstalledPackage:
    """Durable projection of an installed manifest."""
    manifest: Manifest
    files: Tuple[FileEntry, ...] = ()
    installed_at: str = ""
    provides: Tuple[Constraint, ...] = field(default=())
    txid: str = ""

    def __post_init__(self):
        if not self.provides:
            object.__setattr__(self, "provides", self.manifest.all_provides())

    # Manifest passthrough, so records and manifests are interchangeable
    # for the resolver
    @property
    def name(self) -> str:
        return self.manifest.name

    @property
    def version(self) -> str:
        return self.manifest.version

    @property
    def release(self) -> int:
        return self.manifest.release

    @property
    def requires(self) -> Tuple[Constraint, ...]:
        return self.manifest.requires

    @property
    def conflicts(self) -> Tuple[Constraint, ...]:
        return self.manifest.conflicts

    def all_provides(self) -> Tuple[Constraint, ...]:
        return self.provides

    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    @classmethod
    def from_manifest(cls, manifest: Manifest, files, txid: str = "") -> "InstalledPackage":
        entries = tuple(sorted((FileEntry(p, d) for p, d in files), key=lambda f: f.path))
        now = datetime.now(timezone.utc).isoformat(timespec="seconds")
        return cls(manifest=manifest, files=entries, installed_at=now, txid=txid)

    def to_dict(self) -> Dict[str, Any]:
        data = self.manifest.to_dict()
        data["schema"] = SCHEMA
        data["installed_at"] = self.installed_at
        data["transaction"] = self.txid
        data["provides_materialized"] = cons.format_all(self.provides)
        data["files"] = [{"path": f.path, "sha256": f.digest} for f in self.files]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstalledPackage":
        manifest_fields = {k: data.get(k) for k in ["name", "version", "release",
                                                   "provides", "requires", "conflicts"]}
        manifest_fields.update({k: data.get(k) for k in DESCRIPTIVE_FIELDS})
        manifest_fields = {k: v for k, v in manifest_fields.items() if v is not None}
        manifest = Manifest.from_dict(manifest_fields)
        files = tuple(FileEntry(f["path"], f["sha256"]) for f in data.get("files", []))
        provides = cons.parse_all(data.get("provides_materialized") or [])
        return cls(manifest=manifest, files=files,
                   installed_at=data.get("installed_at", ""), provides=provides,
                   txid=data.get("transaction", ""))


class PackageDB:
    """
    File-backed package database scoped to one package root.

    get/find/list/providers/file_owner are reads; put/delete replace or remove
    a whole record document atomically.
    """

    def __init__(self, root: str, state_dir: Optional[str] = None):
        self.root = os.path.abspath(root)
        self.state_dir = state_dir or config.state_dir(self.root)
        self.db_dir = os.path.join(self.state_dir, "db")
        try:
            utils.ensure_dir(self.db_dir)
        except OSError as e:
            raise DatabaseError(f"Cannot create database directory {self.db_dir}: {e}") from e

    # -------------------------
    # Paths
    # -------------------------
    def _record_path(self, name: str) -> str:
        return os.path.join(self.db_dir, f"{name}{RECORD_SUFFIX}")

    @property
    def journal_path(self) -> str:
        return os.path.join(self.db_dir, JOURNAL_NAME)

    def _read_record(self, path: str) -> InstalledPackage:
        try:
            return InstalledPackage.from_dict(utils.load_json(path))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise DatabaseError(f"Corrupt package record {path}: {e}") from e
        except FluidpkgError as e:
            raise DatabaseError(f"Invalid package record {path}: {e}") from e

    # -------------------------
    # Reads
    # -------------------------
    def find(self, name: str) -> Optional[InstalledPackage]:
        if not cons.NAME_RE.match(name):
            return None
        path = self._record_path(name)
        if not os.path.isfile(path):
            return None
        return self._read_record(path)

    def get(self, name: str) -> InstalledPackage:
        record = self.find(name)
        if record is None:
            raise NotInstalled(name)
        return record

    def names(self) -> List[str]:
        try:
            entries = os.listdir(self.db_dir)
        except OSError as e:
            raise DatabaseError(f"Cannot read database directory {self.db_dir}: {e}") from e
        return sorted(fn[:-len(RECORD_SUFFIX)] for fn in entries if fn.endswith(RECORD_SUFFIX))

    def list(self) -> List[InstalledPackage]:
        """All installed records, in name order."""
        return [self._read_record(self._record_path(n)) for n in self.names()]

    def snapshot(self) -> Tuple[InstalledPackage, ...]:
        """Immutable view of the installed set for admission checks."""
        return tuple(self.list())

    def providers(self, name: str) -> List[InstalledPackage]:
        """Records whose materialized provides include `name`."""
        return [r for r in self.list() if any(p.name == name for p in r.provides)]

    def file_owner(self, path: str) -> Optional[str]:
        for record in self.list():
            for f in record.files:
                if f.path == path:
                    return record.name
        return None

    def owners(self) -> Dict[str, str]:
        """path -> owning package, for every installed file."""
        out: Dict[str, str] = {}
        for record in self.list():
            for f in record.files:
                out[f.path] = record.name
        return out

    # -------------------------
    # Writes
    # -------------------------
    def put(self, record: InstalledPackage) -> None:
        """Insert or fully replace the record for record.name."""
        try:
            utils.atomic_write_json(self._record_path(record.name), record.to_dict())
        except OSError as e:
            raise DatabaseError(f"Cannot write record for {record.name}: {e}") from e
        logger.debug("db put %s %s-%s (%d files)", record.name, record.version,
                     record.release, len(record.files))

    def delete(self, name: str) -> None:
        path = self._record_path(name)
        try:
            os.remove(path)
            utils.fsync_dir(self.db_dir)
        except FileNotFoundError:
            raise NotInstalled(name) from None
        except OSError as e:
            raise DatabaseError(f"Cannot delete record for {name}: {e}") from e
        logger.debug("db delete %s", name)

    # -------------------------
    # Journal
    # -------------------------
    def begin_journal(self, entry: Dict[str, Any]) -> None:
        try:
            utils.atomic_write_json(self.journal_path, entry)
        except OSError as e:
            raise DatabaseError(f"Cannot write journal: {e}") from e

    def read_journal(self) -> Optional[Dict[str, Any]]:
        if not os.path.isfile(self.journal_path):
            return None
        try:
            return utils.load_json(self.journal_path)
        except (OSError, json.JSONDecodeError) as e:
            raise DatabaseError(f"Corrupt journal {self.journal_path}: {e}") from e

    def clear_journal(self) -> None:
        try:
            os.remove(self.journal_path)
            utils.fsync_dir(self.db_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise DatabaseError(f"Cannot clear journal: {e}") from e

    def is_consistent(self) -> bool:
        """False while an interrupted operation is waiting for recover()."""
        return not os.path.exists(self.journal_path)
