"""
Tests for fluidpkg.modules.transaction: install / remove / recover.

I/O failures are injected by monkeypatching utils.write_stream and the
database write methods; crashes are simulated by disabling the rollback so
the journal and staging area are left behind for recover().
"""

import hashlib
import os

import pytest

from conftest import memory_archive, read
from fluidpkg.modules import resolver, utils
from fluidpkg.modules.errors import (
    ConflictingPackage,
    DatabaseError,
    FileConflict,
    InstallFailed,
    LockBusy,
    NotInstalled,
    RecoveryRequired,
    RemoveFailed,
    UnmetDependency,
    UnsafeArchivePath,
    WouldBreakDependency,
)
from fluidpkg.modules.transaction import Installer, Transaction, TxState, root_lock


def _staging(installer):
    path = os.path.join(installer.state_dir, "staging")
    return os.listdir(path) if os.path.isdir(path) else []


def _failing_write_stream(fail_on):
    """write_stream replacement raising OSError on the n-th call."""
    real = utils.write_stream
    calls = {"n": 0}

    def _write(src, dest):
        calls["n"] += 1
        if calls["n"] == fail_on:
            raise OSError(28, "No space left on device")
        return real(src, dest)

    return _write


def _db_failure(*args):
    raise DatabaseError("disk full")


def _crash_instead_of_rollback(monkeypatch):
    """Leave journal + staging behind, as a killed process would."""
    monkeypatch.setattr(Installer, "_rollback_install",
                        lambda self, tx, *a: tx.advance(TxState.ROLLED_BACK))


# ---------------------------------------------------------------------------
# Transaction object
# ---------------------------------------------------------------------------

class TestTransactionStates:
    def test_happy_path(self):
        tx = Transaction("install", "foo")
        for state in (TxState.VALIDATED, TxState.STAGED, TxState.COMMITTED):
            tx.advance(state)
        assert tx.done
        assert tx.history == [TxState.PLANNED, TxState.VALIDATED, TxState.STAGED, TxState.COMMITTED]

    @pytest.mark.parametrize("path", [
        [TxState.STAGED],
        [TxState.VALIDATED, TxState.COMMITTED],
        [TxState.VALIDATED, TxState.STAGED, TxState.ABORTED],
        [TxState.ABORTED, TxState.VALIDATED],
        [TxState.ROLLED_BACK],
    ])
    def test_invalid_transitions(self, path):
        tx = Transaction("install", "foo")
        with pytest.raises(RuntimeError):
            for state in path:
                tx.advance(state)

    def test_ids_are_unique(self):
        assert Transaction("install", "a").id != Transaction("install", "a").id


# ---------------------------------------------------------------------------
# Install
# ---------------------------------------------------------------------------

class TestInstall:
    def test_fresh_install(self, installer, db, root):
        tx = installer.install(memory_archive("foo", "1.0", files={
            "bin/foo": b"#!/bin/sh\necho foo\n",
            "share/foo/data.txt": b"data",
        }))
        assert tx.state is TxState.COMMITTED
        assert tx.history == [TxState.PLANNED, TxState.VALIDATED, TxState.STAGED, TxState.COMMITTED]
        assert installer.last_transaction is tx
        assert read(root, "bin/foo") == b"#!/bin/sh\necho foo\n"

        rec = db.get("foo")
        assert rec.paths() == ["bin/foo", "share/foo/data.txt"]
        assert rec.files[1].digest == hashlib.sha256(b"data").hexdigest()
        assert rec.txid == tx.id
        assert db.is_consistent()
        assert _staging(installer) == []

    def test_install_from_zip(self, installer, db, root, make_archive):
        path = make_archive("foo", "1.0", files={"lib/libfoo.so": b"\x7fELF"})
        installer.install_file(path)
        assert read(root, "lib/libfoo.so") == b"\x7fELF"
        assert db.get("foo").version == "1.0"

    def test_empty_package(self, installer, db):
        installer.install(memory_archive("meta_only"))
        assert db.get("meta_only").files == ()

    def test_unmet_dependency_aborts(self, installer, db, root):
        with pytest.raises(UnmetDependency):
            installer.install(memory_archive("app", requires=["lib"], files={"bin/app": b"x"}))
        assert installer.last_transaction.state is TxState.ABORTED
        assert db.list() == []
        assert not os.path.exists(os.path.join(root, "bin"))
        assert db.is_consistent()

    def test_conflict_aborts(self, installer, db):
        installer.install(memory_archive("old", files={"bin/old": b"o"}))
        with pytest.raises(ConflictingPackage):
            installer.install(memory_archive("new", conflicts=["old"], files={"bin/new": b"n"}))
        assert [r.name for r in db.list()] == ["old"]

    def test_file_conflict_leaves_everything_untouched(self, installer, db, root):
        installer.install(memory_archive("a", files={"bin/tool": b"from a"}))
        with pytest.raises(FileConflict) as exc:
            installer.install(memory_archive("b", files={"bin/other": b"b", "bin/tool": b"from b"}))
        assert exc.value.path == "bin/tool"
        assert exc.value.owner == "a"
        assert installer.last_transaction.state is TxState.ABORTED
        assert read(root, "bin/tool") == b"from a"
        assert not os.path.exists(os.path.join(root, "bin/other"))
        assert [r.name for r in db.list()] == ["a"]

    def test_paths_into_state_dir_are_rejected(self, installer, db):
        with pytest.raises(UnsafeArchivePath):
            installer.install(memory_archive("evil", files={".fluidpkg/db/x.installed.json": b"{}"}))
        assert db.list() == []

    def test_unowned_file_is_overwritten(self, installer, root):
        os.makedirs(os.path.join(root, "etc"))
        with open(os.path.join(root, "etc/app.conf"), "wb") as f:
            f.write(b"handwritten")
        installer.install(memory_archive("app", files={"etc/app.conf": b"packaged"}))
        assert read(root, "etc/app.conf") == b"packaged"

    def test_upgrade_retires_files(self, installer, db, root):
        installer.install(memory_archive("foo", "1.0", files={
            "bin/foo": b"v1", "share/foo/old.txt": b"old", "share/keep.txt": b"k",
        }))
        tx = installer.install(memory_archive("foo", "2.0", release=1, files={
            "bin/foo": b"v2", "share/keep.txt": b"k2", "share/foo/new.txt": b"new",
        }))
        assert tx.replaced.version == "1.0"
        assert tx.retired == ["share/foo/old.txt"]
        assert read(root, "bin/foo") == b"v2"
        assert not os.path.exists(os.path.join(root, "share/foo/old.txt"))
        assert read(root, "share/foo/new.txt") == b"new"

        rec = db.get("foo")
        assert (rec.version, rec.release) == ("2.0", 1)
        assert rec.paths() == ["bin/foo", "share/foo/new.txt", "share/keep.txt"]
        assert len(db.list()) == 1

    def test_upgrade_prunes_emptied_dirs(self, installer, root):
        installer.install(memory_archive("foo", "1.0", files={"bin/foo": b"1", "doc/foo/README": b"r"}))
        installer.install(memory_archive("foo", "1.1", files={"bin/foo": b"2"}))
        assert not os.path.exists(os.path.join(root, "doc"))
        assert os.path.isdir(root)

    def test_upgrade_keeps_dependents_satisfied(self, installer, db):
        installer.install(memory_archive("lib", "1.0"))
        installer.install(memory_archive("app", requires=["lib"]))
        installer.install(memory_archive("lib", "2.0"))
        assert resolver.check_closure(db.snapshot()) == []

    def test_downgrade_breaking_dependent_aborts(self, installer, db, root):
        installer.install(memory_archive("lib", "2.0", files={"lib/liblib.so": b"2"}))
        installer.install(memory_archive("app", requires=["lib>=2.0"]))
        with pytest.raises(WouldBreakDependency) as exc:
            installer.install(memory_archive("lib", "1.0", files={"lib/liblib.so": b"1"}))
        assert exc.value.dependent == "app"
        assert installer.last_transaction.state is TxState.ABORTED
        assert db.get("lib").version == "2.0"
        assert read(root, "lib/liblib.so") == b"2"
        assert resolver.check_closure(db.snapshot()) == []

    def test_upgrade_dropping_provide_aborts(self, installer, db):
        installer.install(memory_archive("openssl", "1.0", provides=["ssl"]))
        installer.install(memory_archive("curl", requires=["ssl"]))
        with pytest.raises(WouldBreakDependency) as exc:
            installer.install(memory_archive("openssl", "2.0"))
        assert exc.value.dependent == "curl"
        assert db.get("openssl").version == "1.0"
        assert resolver.check_closure(db.snapshot()) == []

    def test_accepted_sequence_keeps_closure(self, installer, db):
        installer.install(memory_archive("zlib", "1.2"))
        installer.install(memory_archive("openssl", "3.0", provides=["ssl==3.0"]))
        installer.install(memory_archive("curl", requires=["ssl>=1.1", "zlib>=1"]))
        installer.install(memory_archive("zlib", "1.3"))
        installer.install(memory_archive("zlib", "1.1"))
        installer.install(memory_archive("openssl", "3.1", provides=["ssl==3.1"]))
        installer.remove("curl")
        assert resolver.check_closure(db.snapshot()) == []

    def test_upgrade_file_becomes_directory(self, installer, db, root):
        installer.install(memory_archive("foo", "1.0", files={"share/x": b"file"}))
        tx = installer.install(memory_archive("foo", "2.0", files={"share/x/y": b"nested"}))
        assert tx.state is TxState.COMMITTED
        assert tx.retired == ["share/x"]
        assert read(root, "share/x/y") == b"nested"
        assert db.get("foo").paths() == ["share/x/y"]
        assert _staging(installer) == []

    def test_upgrade_directory_becomes_file(self, installer, db, root):
        installer.install(memory_archive("foo", "1.0", files={"share/x/y": b"nested"}))
        tx = installer.install(memory_archive("foo", "2.0", files={"share/x": b"file"}))
        assert tx.state is TxState.COMMITTED
        assert read(root, "share/x") == b"file"
        assert db.get("foo").paths() == ["share/x"]

    def test_failed_file_to_directory_upgrade_restores_file(self, installer, db, root, monkeypatch):
        installer.install(memory_archive("foo", "1.0", files={"share/x": b"file"}))
        monkeypatch.setattr(db, "put", _db_failure)
        with pytest.raises(InstallFailed):
            installer.install(memory_archive("foo", "2.0", files={"share/x/y": b"nested"}))
        monkeypatch.undo()
        assert read(root, "share/x") == b"file"
        assert db.get("foo").version == "1.0"
        assert db.is_consistent()

    def test_io_failure_mid_extraction_rolls_back(self, installer, db, root, monkeypatch):
        monkeypatch.setattr(utils, "write_stream", _failing_write_stream(fail_on=2))
        with pytest.raises(InstallFailed) as exc:
            installer.install(memory_archive("foo", files={"a/1": b"1", "a/2": b"2", "a/3": b"3"}))
        assert isinstance(exc.value.cause, OSError)
        assert installer.last_transaction.state is TxState.ROLLED_BACK
        assert db.list() == []
        assert not os.path.exists(os.path.join(root, "a"))
        assert db.is_consistent()
        assert _staging(installer) == []

    def test_failed_upgrade_restores_previous_version(self, installer, db, root, monkeypatch):
        installer.install(memory_archive("foo", "1.0", files={"bin/foo": b"v1", "share/old": b"o"}))

        monkeypatch.setattr(db, "put", _db_failure)
        with pytest.raises(InstallFailed):
            installer.install(memory_archive("foo", "2.0", files={"bin/foo": b"v2", "share/new": b"n"}))
        monkeypatch.undo()

        assert read(root, "bin/foo") == b"v1"
        assert read(root, "share/old") == b"o"
        assert not os.path.exists(os.path.join(root, "share/new"))
        assert db.get("foo").version == "1.0"
        assert db.is_consistent()

    def test_failed_install_restores_unowned_file(self, installer, db, root, monkeypatch):
        os.makedirs(os.path.join(root, "etc"))
        with open(os.path.join(root, "etc/app.conf"), "wb") as f:
            f.write(b"handwritten")
        monkeypatch.setattr(db, "put", _db_failure)
        with pytest.raises(InstallFailed):
            installer.install(memory_archive("app", files={"etc/app.conf": b"packaged"}))
        assert read(root, "etc/app.conf") == b"handwritten"

    def test_cancellation_rolls_back_and_propagates(self, installer, db, root, monkeypatch):
        def _interrupted(src, dest):
            raise KeyboardInterrupt

        monkeypatch.setattr(utils, "write_stream", _interrupted)
        with pytest.raises(KeyboardInterrupt):
            installer.install(memory_archive("foo", files={"bin/foo": b"x"}))
        assert installer.last_transaction.state is TxState.ROLLED_BACK
        assert db.list() == []
        assert db.is_consistent()

    def test_pending_journal_blocks_new_work(self, installer, db):
        db.begin_journal({"op": "install", "id": "t0", "name": "ghost", "paths": []})
        with pytest.raises(RecoveryRequired):
            installer.install(memory_archive("foo"))
        with pytest.raises(RecoveryRequired):
            installer.remove("foo")

    def test_lock_busy(self, installer):
        nowait = Installer(installer.root, db=installer.db, wait=False)
        with root_lock(installer.state_dir):
            with pytest.raises(LockBusy):
                nowait.install(memory_archive("foo"))
        nowait.install(memory_archive("foo"))


# ---------------------------------------------------------------------------
# Remove
# ---------------------------------------------------------------------------

class TestRemove:
    def test_remove(self, installer, db, root):
        installer.install(memory_archive("foo", files={"bin/foo": b"f", "share/foo/a": b"a"}))
        installer.install(memory_archive("bar", files={"bin/bar": b"b"}))
        tx = installer.remove("foo")
        assert tx.state is TxState.COMMITTED
        assert tx.removed == ["foo"]
        assert db.find("foo") is None
        assert not os.path.exists(os.path.join(root, "bin/foo"))
        assert not os.path.exists(os.path.join(root, "share"))
        assert read(root, "bin/bar") == b"b"
        assert _staging(installer) == []

    def test_not_installed(self, installer):
        with pytest.raises(NotInstalled):
            installer.remove("ghost")
        assert installer.last_transaction.state is TxState.ABORTED

    def test_missing_files_are_tolerated(self, installer, db, root):
        installer.install(memory_archive("foo", files={"bin/foo": b"f", "bin/gone": b"g"}))
        os.remove(os.path.join(root, "bin/gone"))
        installer.remove("foo")
        assert db.find("foo") is None
        assert not os.path.exists(os.path.join(root, "bin"))

    def test_would_break_dependency(self, installer, db, root):
        installer.install(memory_archive("lib", files={"lib/x": b"x"}))
        installer.install(memory_archive("app", requires=["lib"]))
        with pytest.raises(WouldBreakDependency):
            installer.remove("lib")
        assert installer.last_transaction.state is TxState.ABORTED
        assert read(root, "lib/x") == b"x"
        assert db.names() == ["app", "lib"]

    def test_cascade(self, installer, db):
        installer.install(memory_archive("lib"))
        installer.install(memory_archive("mid", requires=["lib"]))
        installer.install(memory_archive("app", requires=["mid"]))
        installer.install(memory_archive("other"))
        tx = installer.remove("lib", cascade=True)
        assert tx.removed == ["app", "mid", "lib"]
        assert db.names() == ["other"]

    def test_failure_restores_files_and_records(self, installer, db, root, monkeypatch):
        installer.install(memory_archive("lib", files={"lib/l": b"l"}))
        installer.install(memory_archive("app", requires=["lib"], files={"bin/app": b"a"}))

        real_delete = db.delete
        calls = []

        def _flaky_delete(name):
            calls.append(name)
            if len(calls) == 2:
                raise DatabaseError("io error")
            real_delete(name)

        monkeypatch.setattr(db, "delete", _flaky_delete)
        with pytest.raises(RemoveFailed) as exc:
            installer.remove("lib", cascade=True)
        monkeypatch.undo()

        assert exc.value.names == ["app", "lib"]
        assert installer.last_transaction.state is TxState.ROLLED_BACK
        assert db.names() == ["app", "lib"]
        assert read(root, "lib/l") == b"l"
        assert read(root, "bin/app") == b"a"
        assert db.is_consistent()


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

class TestRecover:
    def test_nothing_to_recover(self, installer):
        assert installer.recover() is None

    def test_rerun_interrupted_install(self, installer, db, root, make_archive, monkeypatch):
        path = make_archive("foo", "1.0", files={"a/1": b"1", "a/2": b"2"})
        with monkeypatch.context() as mp:
            _crash_instead_of_rollback(mp)
            mp.setattr(utils, "write_stream", _failing_write_stream(fail_on=2))
            with pytest.raises(InstallFailed):
                installer.install_file(path)
        assert not db.is_consistent()

        report = installer.recover()
        assert report["action"] == "rerun"
        assert report["transaction"]["state"] == "committed"
        assert db.is_consistent()
        assert db.get("foo").paths() == ["a/1", "a/2"]
        assert read(root, "a/2") == b"2"

    def test_undo_when_archive_is_gone(self, installer, db, root, make_archive, monkeypatch):
        path = make_archive("foo", "1.0", files={"bin/foo": b"new"})
        with monkeypatch.context() as mp:
            _crash_instead_of_rollback(mp)
            mp.setattr(db, "put", _db_failure)
            with pytest.raises(InstallFailed):
                installer.install_file(path)
        # files were placed before the process "died"
        assert read(root, "bin/foo") == b"new"
        os.remove(path)

        report = installer.recover()
        assert report["action"] == "rolled_back"
        assert not os.path.exists(os.path.join(root, "bin/foo"))
        assert db.list() == []
        assert db.is_consistent()
        assert _staging(installer) == []

    def test_commit_landed_before_crash(self, installer, db, root, monkeypatch):
        with monkeypatch.context() as mp:
            _crash_instead_of_rollback(mp)
            mp.setattr(db, "clear_journal", _db_failure)
            with pytest.raises(InstallFailed):
                installer.install(memory_archive("foo", files={"bin/foo": b"f"}))
        assert not db.is_consistent()

        report = installer.recover()
        assert report["action"] == "completed"
        assert db.get("foo").paths() == ["bin/foo"]
        assert read(root, "bin/foo") == b"f"
        assert db.is_consistent()

    def test_rerun_interrupted_remove(self, installer, db, root):
        installer.install(memory_archive("foo", files={"bin/foo": b"f"}))
        installer.install(memory_archive("bar", files={"bin/bar": b"b"}))
        db.begin_journal({"op": "remove", "id": "crashed", "name": "foo", "names": ["foo", "bar"]})
        os.remove(os.path.join(root, "bin/foo"))
        db.delete("foo")

        report = installer.recover()
        assert report["action"] == "completed"
        assert db.list() == []
        assert not os.path.exists(os.path.join(root, "bin/bar"))
        assert db.is_consistent()

    def test_rerun_happens_under_the_root_lock(self, installer, db, make_archive, monkeypatch):
        path = make_archive("foo", "1.0", files={"a/1": b"1"})
        with monkeypatch.context() as mp:
            _crash_instead_of_rollback(mp)
            mp.setattr(db, "put", _db_failure)
            with pytest.raises(InstallFailed):
                installer.install_file(path)

        real = utils.write_stream
        contended = []

        def _write(src, dest):
            try:
                with root_lock(installer.state_dir, wait=False):
                    contended.append(False)
            except LockBusy:
                contended.append(True)
            return real(src, dest)

        monkeypatch.setattr(utils, "write_stream", _write)
        report = installer.recover()
        assert report["action"] == "rerun"
        assert contended == [True]
        assert db.get("foo").paths() == ["a/1"]
