#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
query.py - read-only projections over the package database

- list / info / files / owner / provides / reverse requires / search
- verify: compares installed files against their recorded sha256
- audit: invariant check over the whole installed set

Nothing here takes the root lock or writes to the database.
"""

from __future__ import annotations

import fnmatch
import os
import posixpath
from typing import Dict, List, Optional

from fluidpkg.modules import constraint as cons
from fluidpkg.modules import log, resolver, utils
from fluidpkg.modules.database import InstalledPackage, PackageDB

logger = log.get_logger("query")


# ---------- summaries ----------

def summary(record: InstalledPackage) -> dict:
    return {
        "name": record.name,
        "version": record.version,
        "release": record.release,
        "summary": record.manifest.summary,
    }


def details(record: InstalledPackage) -> dict:
    data = record.manifest.to_dict()
    data["provides"] = cons.format_all(record.provides)
    data["installed_at"] = record.installed_at
    data["files"] = len(record.files)
    return data


# ---------- lookups ----------

def list_installed(db: PackageDB) -> List[dict]:
    return [summary(r) for r in db.list()]


def query_package(db: PackageDB, name: str) -> dict:
    """Full record of an installed package (NotInstalled otherwise)."""
    return details(db.get(name))


def files_of(db: PackageDB, name: str) -> List[dict]:
    return [{"path": f.path, "sha256": f.digest} for f in db.get(name).files]


def owner_of(db: PackageDB, path: str) -> Optional[str]:
    """Owner of a root-relative path; absolute paths inside the root are accepted."""
    if os.path.isabs(path):
        rel = os.path.relpath(path, db.root)
        if rel.startswith(".."):
            return None
        path = rel
    return db.file_owner(posixpath.normpath(path.replace(os.sep, "/")))


def what_provides(db: PackageDB, text: str, compare=None) -> List[dict]:
    """Installed packages whose provides satisfy a constraint string."""
    constraint = cons.parse(text)
    compare = compare or cons.get_comparator()
    out = []
    for record in db.list():
        if cons.provided_by(constraint, record.provides, compare):
            out.append(summary(record))
    return out


def who_requires(db: PackageDB, name: str, compare=None) -> List[str]:
    """Installed packages with a requirement satisfied by `name`."""
    return resolver.dependents_of(name, db.snapshot(), compare or cons.get_comparator())


def search_installed(db: PackageDB, pattern: str) -> List[dict]:
    """
    Case-insensitive search over name and summary. Patterns containing
    glob characters are matched with fnmatch, anything else as a substring.
    """
    pat = pattern.lower()
    is_glob = any(ch in pat for ch in "*?[")
    out = []
    for record in db.list():
        fields = [record.name.lower(), str(record.manifest.summary or "").lower()]
        if is_glob:
            hit = any(fnmatch.fnmatch(f, pat) for f in fields)
        else:
            hit = any(pat in f for f in fields)
        if hit:
            out.append(summary(record))
    return out


# ---------- verification ----------

def verify_package(db: PackageDB, name: str) -> dict:
    """Compare each installed file with its integrity token."""
    record = db.get(name)
    report = {"name": name, "missing": [], "modified": [], "ok": True}
    for f in record.files:
        target = os.path.join(db.root, *f.path.split("/"))
        if not os.path.isfile(target):
            report["missing"].append(f.path)
            continue
        if utils.sha256_file(target) != f.digest:
            report["modified"].append(f.path)
    report["ok"] = not report["missing"] and not report["modified"]
    if not report["ok"]:
        logger.warning("%s: %d missing, %d modified", name,
                       len(report["missing"]), len(report["modified"]))
    return report


def verify_all(db: PackageDB) -> List[dict]:
    return [verify_package(db, n) for n in db.names()]


def audit(db: PackageDB, compare=None) -> Dict[str, object]:
    """Database-level health: pending journal plus invariant violations."""
    issues = resolver.check_closure(db.snapshot(), compare or cons.get_comparator())
    journal = db.read_journal()
    if journal is not None:
        issues.insert(0, f"interrupted {journal.get('op')} of {journal.get('name')} pending recovery")
    return {"consistent": journal is None, "issues": issues, "ok": not issues}
