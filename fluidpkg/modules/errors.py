#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
errors.py - Error taxonomy for fluidpkg.

Every error raised by the engine derives from FluidpkgError and carries the
offending name / constraint / path as attributes so the CLI can report it
verbatim.

Groups:
- input / schema errors: never retried
- admission errors: raised before any mutation
- staging errors: I/O failures that triggered a rollback
- environment errors: database, lock, root discovery, repository
"""

from __future__ import annotations

from typing import Optional


class FluidpkgError(Exception):
    """Base exception for fluidpkg."""


# ---------------------------------------------------------------------------
# Input / schema
# ---------------------------------------------------------------------------

class InvalidConstraintFormat(FluidpkgError):
    def __init__(self, text: str, reason: str = ""):
        self.text = text
        self.reason = reason
        msg = f"Invalid constraint {text!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MalformedManifest(FluidpkgError):
    def __init__(self, reason: str, field: Optional[str] = None):
        self.reason = reason
        self.field = field
        super().__init__(f"Malformed manifest: {reason}")


class MissingManifestEntry(FluidpkgError):
    def __init__(self, entry: str):
        self.entry = entry
        super().__init__(f"Archive has no {entry}")


class ArchiveError(FluidpkgError):
    """Raised when an archive container cannot be read."""


class UnsafeArchivePath(ArchiveError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Archive entry escapes the package root: {path!r}")


# ---------------------------------------------------------------------------
# Admission control
# ---------------------------------------------------------------------------

class AdmissionError(FluidpkgError):
    """Install/remove rejected before any filesystem or database mutation."""


class NotInstalled(AdmissionError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Package {name} is not installed")


class UnmetDependency(AdmissionError):
    def __init__(self, package: str, constraint):
        self.package = package
        self.constraint = constraint
        super().__init__(f"{package} requires {constraint}, which nothing provides")


class ConflictingPackage(AdmissionError):
    def __init__(self, name: str, constraint, declared_by: str):
        self.name = name
        self.constraint = constraint
        self.declared_by = declared_by
        super().__init__(f"Conflicts with installed package {name}: {declared_by} declares conflict {constraint}")


class WouldBreakDependency(AdmissionError):
    def __init__(self, dependent: str, constraint, removing: str,
                 replacement: Optional[str] = None):
        self.dependent = dependent
        self.constraint = constraint
        self.removing = removing
        self.replacement = replacement
        if replacement is None:
            msg = f"Removing {removing} would break {dependent} (requires {constraint}); use cascade to remove it too"
        else:
            msg = f"Replacing installed {removing} with {replacement} would break {dependent} (requires {constraint})"
        super().__init__(msg)


class FileConflict(AdmissionError):
    def __init__(self, path: str, owner: str):
        self.path = path
        self.owner = owner
        super().__init__(f"{path} is owned by {owner}")


# ---------------------------------------------------------------------------
# Staging failures
# ---------------------------------------------------------------------------

class InstallFailed(FluidpkgError):
    def __init__(self, name: str, cause: BaseException):
        self.name = name
        self.cause = cause
        super().__init__(f"Install of {name} failed and was rolled back: {cause}")


class RemoveFailed(FluidpkgError):
    def __init__(self, names, cause: BaseException):
        self.names = list(names)
        self.cause = cause
        super().__init__(f"Removal of {', '.join(self.names)} failed and was rolled back: {cause}")


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

class DatabaseError(FluidpkgError):
    """The package database is unreadable, corrupt or could not be written."""


class RecoveryRequired(FluidpkgError):
    def __init__(self, journal: dict):
        self.journal = journal
        super().__init__(
            f"An interrupted {journal.get('op')} of {journal.get('name')} is pending; run recover first"
        )


class LockBusy(FluidpkgError):
    def __init__(self, lock_path: str):
        self.lock_path = lock_path
        super().__init__(f"Another transaction holds {lock_path}")


class RootNotFound(FluidpkgError):
    def __init__(self, start: str):
        self.start = start
        super().__init__(f"No package root found from {start}")


class RepositoryError(FluidpkgError):
    """Repository index could not be loaded or has no matching package."""
