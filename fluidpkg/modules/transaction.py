# transaction.py
"""
Transactional install / remove for one package root.

Every operation is a Transaction moving through
    PLANNED -> VALIDATED -> STAGED -> COMMITTED
with ABORTED reachable from PLANNED/VALIDATED (nothing touched yet) and
ROLLED_BACK reachable from STAGED (filesystem restored, database unchanged).

Install:
  - manifest load, resolver admission and file ownership checks happen
    before anything is written
  - the journal is written, every data entry is extracted into
    <state>/staging/<txid>/stage
  - files the replaced version shipped but the new one does not are moved
    into .../retired, then the staged files are moved into place;
    pre-existing files are moved aside into .../backup first
  - the record is put, the journal is cleared
Remove:
  - owned files are moved into .../trash, records are deleted in removal
    order, the journal is cleared, the trash is discarded

Staging is idempotent: a crash leaves the journal behind, the database
reports itself inconsistent, and recover() either completes the operation
(re-running it from the journal) or restores the previous state.
"""

from __future__ import annotations

import contextlib
import enum
import fcntl
import os
import shutil
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fluidpkg.modules import archive as archive_mod
from fluidpkg.modules import config, log, utils
from fluidpkg.modules import constraint as cons
from fluidpkg.modules import manifest as manifest_mod
from fluidpkg.modules import resolver
from fluidpkg.modules.database import InstalledPackage, PackageDB
from fluidpkg.modules.errors import (
    ArchiveError,
    FileConflict,
    InstallFailed,
    LockBusy,
    RecoveryRequired,
    RemoveFailed,
    UnsafeArchivePath,
)

logger = log.get_logger("transaction")


class TxState(str, enum.Enum):
    PLANNED = "planned"
    VALIDATED = "validated"
    STAGED = "staged"
    COMMITTED = "committed"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled_back"


TRANSITIONS = {
    TxState.PLANNED: {TxState.VALIDATED, TxState.ABORTED},
    TxState.VALIDATED: {TxState.STAGED, TxState.ABORTED},
    TxState.STAGED: {TxState.COMMITTED, TxState.ROLLED_BACK},
}

TERMINAL = {TxState.COMMITTED, TxState.ABORTED, TxState.ROLLED_BACK}


def _new_txid() -> str:
    return f"{time.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"


@dataclass
class Transaction:
    op: str
    target: str
    id: str = field(default_factory=_new_txid)
    state: TxState = TxState.PLANNED
    history: List[TxState] = field(default_factory=lambda: [TxState.PLANNED])
    record: Optional[InstalledPackage] = None
    replaced: Optional[InstalledPackage] = None
    removed: List[str] = field(default_factory=list)
    retired: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None

    def advance(self, state: TxState) -> None:
        if state not in TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Invalid transition {self.state.value} -> {state.value}")
        logger.info("[%s] %s %s: %s -> %s", self.id, self.op, self.target,
                    self.state.value, state.value)
        self.state = state
        self.history.append(state)

    @property
    def done(self) -> bool:
        return self.state in TERMINAL

    def to_dict(self) -> dict:
        out = {
            "id": self.id,
            "op": self.op,
            "target": self.target,
            "state": self.state.value,
            "history": [s.value for s in self.history],
        }
        if self.record is not None:
            out["installed"] = {"name": self.record.name, "version": self.record.version,
                                "release": self.record.release, "files": len(self.record.files)}
        if self.replaced is not None:
            out["replaced"] = {"name": self.replaced.name, "version": self.replaced.version,
                               "release": self.replaced.release}
        if self.removed:
            out["removed"] = list(self.removed)
        if self.retired:
            out["retired"] = list(self.retired)
        if self.error is not None:
            out["error"] = str(self.error)
        return out


@contextlib.contextmanager
def root_lock(state_dir: str, wait: bool = True):
    """
    Exclusive lock for one package root (flock on <state>/lock).
    With wait=False a held lock raises LockBusy instead of blocking.
    """
    utils.ensure_dir(state_dir)
    lock_path = os.path.join(state_dir, "lock")
    with open(lock_path, "a+", encoding="utf-8") as lf:
        flags = fcntl.LOCK_EX if wait else fcntl.LOCK_EX | fcntl.LOCK_NB
        try:
            fcntl.flock(lf.fileno(), flags)
        except BlockingIOError:
            raise LockBusy(lock_path) from None
        try:
            yield
        finally:
            fcntl.flock(lf.fileno(), fcntl.LOCK_UN)


class Installer:
    """Install / remove / recover for a package root."""

    def __init__(self, root: str, db: Optional[PackageDB] = None,
                 compare: Optional[cons.VersionComparator] = None,
                 wait: Optional[bool] = None):
        self.root = os.path.abspath(root)
        self.db = db or PackageDB(self.root)
        self.state_dir = self.db.state_dir
        self.compare = compare or cons.get_comparator()
        self.wait = config.get("lock_wait", True) if wait is None else wait
        self.last_transaction: Optional[Transaction] = None

    # -------------------------
    # Paths
    # -------------------------
    def _target(self, rel: str) -> str:
        return os.path.join(self.root, *rel.split("/"))

    def _txdir(self, txid: str) -> str:
        return os.path.join(self.state_dir, "staging", txid)

    def _locked(self):
        return root_lock(self.state_dir, wait=self.wait)

    def _check_journal(self) -> None:
        journal = self.db.read_journal()
        if journal is not None:
            raise RecoveryRequired(journal)

    def _check_paths(self, data: Dict[str, archive_mod.ArchiveEntry]) -> None:
        marker = os.path.basename(self.state_dir)
        for rel in data:
            if rel.split("/", 1)[0] == marker:
                raise UnsafeArchivePath(rel)

    def _check_ownership(self, name: str, data: Dict[str, archive_mod.ArchiveEntry]) -> None:
        owners = self.db.owners()
        for rel in sorted(data):
            owner = owners.get(rel)
            if owner is not None and owner != name:
                raise FileConflict(rel, owner)

    # -------------------------
    # Install
    # -------------------------
    def install_file(self, path: str) -> Transaction:
        with archive_mod.open_archive(path) as archive:
            return self.install(archive)

    def install(self, archive: archive_mod.Archive) -> Transaction:
        return self._install(archive, self._locked())

    def _install(self, archive: archive_mod.Archive, guard) -> Transaction:
        tx = Transaction("install", archive.location or "<memory>")
        self.last_transaction = tx
        try:
            with guard:
                self._check_journal()
                manifest = manifest_mod.load(archive)
                tx.target = manifest.name

                plan = resolver.check_install(manifest, self.db.snapshot(), self.compare)
                data = archive.data_entries()
                self._check_paths(data)
                self._check_ownership(manifest.name, data)
                tx.replaced = plan.replaces
                tx.advance(TxState.VALIDATED)

                self._describe_plan(manifest, plan)
                self._stage_install(tx, manifest, plan, data, archive.location)
        except BaseException as e:
            tx.error = e
            if tx.state in (TxState.PLANNED, TxState.VALIDATED):
                tx.advance(TxState.ABORTED)
                logger.warning("install aborted: %s", e)
            raise
        return tx

    def _describe_plan(self, manifest, plan: resolver.InstallPlan) -> None:
        old = plan.replaces
        if old is None:
            logger.info("Installing %s %s-%s", manifest.name, manifest.version, manifest.release)
            return
        result = cons.compare_packages((manifest.version, manifest.release),
                                       (old.version, old.release), self.compare)
        kind = "Upgrading" if result > 0 else "Downgrading" if result < 0 else "Reinstalling"
        logger.info("%s %s %s-%s -> %s-%s", kind, manifest.name, old.version, old.release,
                    manifest.version, manifest.release)

    def _stage_install(self, tx: Transaction, manifest, plan: resolver.InstallPlan,
                       data: Dict[str, archive_mod.ArchiveEntry],
                       location: Optional[str]) -> None:
        txdir = self._txdir(tx.id)
        paths = sorted(data)
        self.db.begin_journal({
            "op": "install",
            "id": tx.id,
            "name": manifest.name,
            "archive": location,
            "paths": paths,
        })
        tx.advance(TxState.STAGED)

        put_attempted = False
        try:
            utils.ensure_dir(os.path.join(txdir, "stage"))
            digests = self._extract(data, os.path.join(txdir, "stage"))

            # superseded files go first: a path may turn into a directory or back
            new_paths = set(paths)
            if plan.replaces is not None:
                retired = [p for p in plan.replaces.paths() if p not in new_paths]
                self._retire(txdir, retired)
                tx.retired = retired
            self._place(txdir, paths)

            record = InstalledPackage.from_manifest(manifest, digests.items(), txid=tx.id)
            put_attempted = True
            self.db.put(record)
            self.db.clear_journal()
        except BaseException as e:
            tx.error = e
            self._rollback_install(tx, txdir, paths, plan, put_attempted)
            if not isinstance(e, Exception):
                raise
            raise InstallFailed(manifest.name, e) from e

        tx.record = record
        tx.advance(TxState.COMMITTED)
        self._cleanup(txdir, tx.retired)
        logger.info("Installed %s %s-%s (%d files)", record.name, record.version,
                    record.release, len(record.files))

    def _extract(self, data: Dict[str, archive_mod.ArchiveEntry], stage_dir: str) -> Dict[str, str]:
        digests: Dict[str, str] = {}
        for rel in sorted(data):
            dest = os.path.join(stage_dir, *rel.split("/"))
            utils.ensure_dir(os.path.dirname(dest))
            with data[rel].open() as src:
                digests[rel] = utils.write_stream(src, dest)
            logger.debug("staged %s", rel)
        return digests

    def _place(self, txdir: str, paths: List[str]) -> None:
        stage_dir = os.path.join(txdir, "stage")
        backup_dir = os.path.join(txdir, "backup")
        # from here on, a missing staged file means it was moved into place
        with open(os.path.join(txdir, "placing"), "w", encoding="utf-8"):
            pass
        for rel in paths:
            target = self._target(rel)
            utils.ensure_dir(os.path.dirname(target))
            if os.path.lexists(target):
                if os.path.isdir(target) and not os.path.islink(target):
                    raise IsADirectoryError(f"{rel} exists as a directory")
                backup = os.path.join(backup_dir, *rel.split("/"))
                utils.ensure_dir(os.path.dirname(backup))
                os.replace(target, backup)
            os.replace(os.path.join(stage_dir, *rel.split("/")), target)
            logger.debug("placed %s", rel)

    def _retire(self, txdir: str, retired: List[str]) -> None:
        retired_dir = os.path.join(txdir, "retired")
        for rel in retired:
            target = self._target(rel)
            if not os.path.lexists(target):
                logger.debug("retired file already absent: %s", rel)
                continue
            dest = os.path.join(retired_dir, *rel.split("/"))
            utils.ensure_dir(os.path.dirname(dest))
            os.replace(target, dest)
            utils.prune_empty_dirs(os.path.dirname(target), self.root)
            logger.debug("retired %s", rel)

    def _undo_install_files(self, txdir: str, paths: List[str]) -> None:
        """Put the filesystem back the way it was before the staged install."""
        stage_dir = os.path.join(txdir, "stage")
        backup_dir = os.path.join(txdir, "backup")
        retired_dir = os.path.join(txdir, "retired")

        if os.path.exists(os.path.join(txdir, "placing")):
            for rel in reversed(paths):
                target = self._target(rel)
                staged = os.path.join(stage_dir, *rel.split("/"))
                backup = os.path.join(backup_dir, *rel.split("/"))
                if not os.path.lexists(staged) and os.path.lexists(target):
                    os.remove(target)
                if os.path.lexists(backup):
                    os.replace(backup, target)
                elif not os.path.lexists(target):
                    utils.prune_empty_dirs(os.path.dirname(target), self.root)

        if os.path.isdir(retired_dir):
            for dirpath, _, filenames in os.walk(retired_dir):
                for fn in filenames:
                    src = os.path.join(dirpath, fn)
                    rel = os.path.relpath(src, retired_dir).replace(os.sep, "/")
                    target = self._target(rel)
                    utils.ensure_dir(os.path.dirname(target))
                    os.replace(src, target)

    def _rollback_install(self, tx: Transaction, txdir: str, paths: List[str],
                          plan: resolver.InstallPlan, put_attempted: bool) -> None:
        logger.error("[%s] install of %s failed, rolling back: %s", tx.id, tx.target, tx.error)
        try:
            self._undo_install_files(txdir, paths)
            if put_attempted:
                current = self.db.find(tx.target)
                if current is not None and current.txid == tx.id:
                    if plan.replaces is not None:
                        self.db.put(plan.replaces)
                    else:
                        self.db.delete(tx.target)
            shutil.rmtree(txdir, ignore_errors=True)
            self.db.clear_journal()
        except Exception:
            # journal stays behind; recover() finishes the job
            log.exception(f"[{tx.id}] rollback incomplete, recovery required")
        tx.advance(TxState.ROLLED_BACK)

    def _cleanup(self, txdir: str, touched: List[str]) -> None:
        try:
            if os.path.isdir(txdir):
                shutil.rmtree(txdir)
        except OSError as e:
            logger.warning("Could not remove staging area %s: %s", txdir, e)
        for rel in touched:
            utils.prune_empty_dirs(os.path.dirname(self._target(rel)), self.root)
        utils.prune_empty_dirs(os.path.dirname(txdir), self.state_dir)

    # -------------------------
    # Remove
    # -------------------------
    def remove(self, name: str, cascade: bool = False) -> Transaction:
        tx = Transaction("remove", name)
        self.last_transaction = tx
        try:
            with self._locked():
                self._check_journal()
                snapshot = self.db.snapshot()
                order = resolver.check_remove(name, snapshot, cascade=cascade, compare=self.compare)
                tx.advance(TxState.VALIDATED)
                if len(order) > 1:
                    logger.info("Cascade removal order: %s", ", ".join(order))
                records = {r.name: r for r in snapshot if r.name in order}
                self._stage_remove(tx, order, records)
        except BaseException as e:
            tx.error = e
            if tx.state in (TxState.PLANNED, TxState.VALIDATED):
                tx.advance(TxState.ABORTED)
                logger.warning("remove aborted: %s", e)
            raise
        return tx

    def _stage_remove(self, tx: Transaction, order: List[str],
                      records: Dict[str, InstalledPackage]) -> None:
        txdir = self._txdir(tx.id)
        self.db.begin_journal({"op": "remove", "id": tx.id, "name": tx.target, "names": order})
        tx.advance(TxState.STAGED)

        moved: List[str] = []
        deleted: List[str] = []
        try:
            for name in order:
                moved.extend(self._trash_files(txdir, records[name]))
            for name in order:
                self.db.delete(name)
                deleted.append(name)
            self.db.clear_journal()
        except BaseException as e:
            tx.error = e
            self._rollback_remove(tx, txdir, moved, [records[n] for n in deleted])
            if not isinstance(e, Exception):
                raise
            raise RemoveFailed(order, e) from e

        tx.removed = list(order)
        tx.advance(TxState.COMMITTED)
        self._cleanup(txdir, [p for n in order for p in records[n].paths()])
        logger.info("Removed %s", ", ".join(order))

    def _trash_files(self, txdir: str, record: InstalledPackage) -> List[str]:
        trash_dir = os.path.join(txdir, "trash")
        moved = []
        for rel in record.paths():
            target = self._target(rel)
            if not os.path.lexists(target):
                logger.debug("%s: %s already absent, skipping", record.name, rel)
                continue
            dest = os.path.join(trash_dir, *rel.split("/"))
            utils.ensure_dir(os.path.dirname(dest))
            os.replace(target, dest)
            moved.append(rel)
        return moved

    def _rollback_remove(self, tx: Transaction, txdir: str, moved: List[str],
                         deleted: List[InstalledPackage]) -> None:
        logger.error("[%s] removal of %s failed, rolling back: %s", tx.id, tx.target, tx.error)
        trash_dir = os.path.join(txdir, "trash")
        try:
            for rel in reversed(moved):
                target = self._target(rel)
                utils.ensure_dir(os.path.dirname(target))
                os.replace(os.path.join(trash_dir, *rel.split("/")), target)
            for record in deleted:
                self.db.put(record)
            shutil.rmtree(txdir, ignore_errors=True)
            self.db.clear_journal()
        except Exception:
            log.exception(f"[{tx.id}] rollback incomplete, recovery required")
        tx.advance(TxState.ROLLED_BACK)

    # -------------------------
    # Recovery
    # -------------------------
    def recover(self) -> Optional[dict]:
        """
        Reconcile an operation interrupted between filesystem and database
        mutation. Returns a report dict, or None when nothing was pending.
        """
        with self._locked():
            journal = self.db.read_journal()
            if journal is None:
                return None
            op = journal.get("op")
            txid = journal.get("id", "")
            txdir = self._txdir(txid)
            logger.warning("Recovering interrupted %s of %s (%s)", op, journal.get("name"), txid)

            if op == "install":
                report = self._recover_install(journal, txdir)
            elif op == "remove":
                report = self._recover_remove(journal, txdir)
            else:
                raise RecoveryRequired(journal)

            if report.get("rerun"):
                # still holding the root lock
                with archive_mod.open_archive(journal["archive"]) as archive:
                    tx = self._install(archive, contextlib.nullcontext())
                report["transaction"] = tx.to_dict()
        return report

    def _recover_install(self, journal: dict, txdir: str) -> dict:
        name = journal.get("name")
        report = {"op": "install", "name": name, "id": journal.get("id")}
        current = self.db.find(name)
        if current is not None and current.txid == journal.get("id"):
            # record committed, only the cleanup was lost
            self._cleanup(txdir, [])
            self.db.clear_journal()
            report["action"] = "completed"
            return report

        self._undo_install_files(txdir, journal.get("paths", []))
        shutil.rmtree(txdir, ignore_errors=True)
        self.db.clear_journal()

        location = journal.get("archive")
        if location and os.path.isfile(location):
            try:
                archive_mod.open_archive(location).close()
            except ArchiveError as e:
                logger.warning("Archive %s unreadable (%s); install rolled back", location, e)
            else:
                report["action"] = "rerun"
                report["rerun"] = True
                return report
        report["action"] = "rolled_back"
        return report

    def _recover_remove(self, journal: dict, txdir: str) -> dict:
        names = journal.get("names", [])
        touched: List[str] = []
        for name in names:
            record = self.db.find(name)
            if record is None:
                continue
            touched.extend(self._trash_files(txdir, record))
            self.db.delete(name)
        self.db.clear_journal()
        self._cleanup(txdir, touched)
        return {"op": "remove", "name": journal.get("name"), "id": journal.get("id"),
                "action": "completed", "removed": names}
