#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/resolver.py - dependency & conflict admission control

Pure functions of (candidate, snapshot): no database access, no I/O.
A snapshot is any sequence of packages exposing name, version, release,
requires, conflicts and all_provides() (InstalledPackage records and
Manifest objects both qualify).

- check_install(): may this manifest be installed (possibly replacing the
  installed package of the same name)?
- check_remove(): may this package be removed? With cascade, returns the
  dependents that must go too, ordered so nothing is removed while a
  not-yet-removed package still requires it.
- dependents_of() / check_closure(): reverse dependencies and invariant audit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from fluidpkg.modules import log
from fluidpkg.modules.constraint import Constraint, VersionComparator, provided_by
from fluidpkg.modules.errors import (
    ConflictingPackage,
    NotInstalled,
    UnmetDependency,
    WouldBreakDependency,
)

logger = log.get_logger("resolver")


@dataclass(frozen=True)
class InstallPlan:
    candidate: object
    replaces: Optional[object] = None

    @property
    def is_upgrade(self) -> bool:
        return self.replaces is not None


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _satisfied(req: Constraint, others: Iterable, compare: Optional[VersionComparator]) -> bool:
    return any(provided_by(req, pkg.all_provides(), compare) for pkg in others)


def _providers(req: Constraint, others: Iterable, compare: Optional[VersionComparator]) -> List:
    return [pkg for pkg in others if provided_by(req, pkg.all_provides(), compare)]


def _by_name(snapshot: Sequence) -> Dict[str, object]:
    return {pkg.name: pkg for pkg in snapshot}


# ---------------------------------------------------------------------
# Install admission
# ---------------------------------------------------------------------

def check_install(candidate, snapshot: Sequence,
                  compare: Optional[VersionComparator] = None) -> InstallPlan:
    """
    Hypothetical set = snapshot minus any same-name record, plus candidate.
    Raises UnmetDependency / ConflictingPackage, or WouldBreakDependency when
    the replaced record was needed by an installed dependent; returns the plan
    otherwise.
    """
    replaces = next((pkg for pkg in snapshot if pkg.name == candidate.name), None)
    others = [pkg for pkg in snapshot if pkg.name != candidate.name]

    for req in candidate.requires:
        if not _satisfied(req, others, compare):
            logger.debug("%s: unmet requirement %s", candidate.name, req)
            raise UnmetDependency(candidate.name, req)

    candidate_provides = candidate.all_provides()
    for conflict in candidate.conflicts:
        for other in others:
            if provided_by(conflict, other.all_provides(), compare):
                raise ConflictingPackage(other.name, conflict, declared_by=candidate.name)

    for other in others:
        for conflict in other.conflicts:
            if provided_by(conflict, candidate_provides, compare):
                raise ConflictingPackage(other.name, conflict, declared_by=other.name)

    if replaces is not None:
        # the installed copy leaves the set: its dependents must still resolve
        baseline = {(pkg.name, req) for pkg, req in _broken_by(set(), snapshot, compare)}
        for dependent, req in _broken_by(set(), others + [candidate], compare):
            if dependent.name == candidate.name or (dependent.name, req) in baseline:
                continue
            logger.debug("%s: replacing %s-%s breaks %s (%s)", candidate.name,
                         replaces.version, replaces.release, dependent.name, req)
            raise WouldBreakDependency(dependent.name, req, candidate.name,
                                       replacement=f"{candidate.version}-{candidate.release}")
        logger.debug("%s: replaces installed %s-%s", candidate.name,
                     replaces.version, replaces.release)
    return InstallPlan(candidate=candidate, replaces=replaces)


# ---------------------------------------------------------------------
# Remove admission
# ---------------------------------------------------------------------

def _broken_by(removing: Set[str], snapshot: Sequence,
               compare: Optional[VersionComparator]) -> List[Tuple[object, Constraint]]:
    """(dependent, constraint) pairs left unsatisfied once `removing` is gone."""
    remaining = [pkg for pkg in snapshot if pkg.name not in removing]
    broken = []
    for pkg in remaining:
        others = [o for o in remaining if o.name != pkg.name]
        for req in pkg.requires:
            if not _satisfied(req, others, compare):
                broken.append((pkg, req))
    return broken


def check_remove(name: str, snapshot: Sequence, cascade: bool = False,
                 compare: Optional[VersionComparator] = None) -> List[str]:
    """
    Returns the names to remove, in removal order. Without cascade this is
    [name] or WouldBreakDependency is raised.
    """
    installed = _by_name(snapshot)
    if name not in installed:
        raise NotInstalled(name)

    # requirements already unsatisfied before this removal are not its fault
    baseline = {(pkg.name, req) for pkg, req in _broken_by(set(), snapshot, compare)}

    removing: Set[str] = {name}
    while True:
        broken = [(pkg, req) for pkg, req in _broken_by(removing, snapshot, compare)
                  if (pkg.name, req) not in baseline]
        if not broken:
            break
        if not cascade:
            dependent, req = broken[0]
            raise WouldBreakDependency(dependent.name, req, name)
        for dependent, req in broken:
            logger.debug("cascade: %s (requires %s) scheduled for removal", dependent.name, req)
            removing.add(dependent.name)

    return removal_order(removing, snapshot, compare)


def removal_order(names: Set[str], snapshot: Sequence,
                  compare: Optional[VersionComparator] = None) -> List[str]:
    """
    Topological order over the affected subgraph only (Kahn): a package is
    emitted once every package in `names` that requires it has been emitted.
    Cycles are broken in name order.
    """
    pkgs = {pkg.name: pkg for pkg in snapshot if pkg.name in names}

    # dependency -> set of dependents inside the subgraph
    dependents: Dict[str, Set[str]] = {n: set() for n in pkgs}
    for n, pkg in pkgs.items():
        for req in pkg.requires:
            for provider in _providers(req, pkgs.values(), compare):
                if provider.name != n:
                    dependents[provider.name].add(n)

    order: List[str] = []
    pending = dict(dependents)
    while pending:
        ready = sorted(n for n, deps in pending.items() if not (deps - set(order)))
        if not ready:
            # cycle: emit the first remaining name to make progress
            ready = [sorted(pending)[0]]
        for n in ready:
            order.append(n)
            pending.pop(n)
    return order


# ---------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------

def dependents_of(name: str, snapshot: Sequence,
                  compare: Optional[VersionComparator] = None) -> List[str]:
    """Installed packages with a requirement satisfied by `name`."""
    installed = _by_name(snapshot)
    target = installed.get(name)
    if target is None:
        raise NotInstalled(name)
    out = []
    for pkg in snapshot:
        if pkg.name == name:
            continue
        if any(provided_by(req, target.all_provides(), compare) for req in pkg.requires):
            out.append(pkg.name)
    return sorted(out)


def check_closure(snapshot: Sequence, compare: Optional[VersionComparator] = None) -> List[str]:
    """Human-readable list of invariant violations in an installed set."""
    issues: List[str] = []
    seen: Dict[str, str] = {}
    for pkg in snapshot:
        files = getattr(pkg, "files", ())
        for f in files:
            owner = seen.get(f.path)
            if owner is not None and owner != pkg.name:
                issues.append(f"file {f.path} owned by both {owner} and {pkg.name}")
            seen[f.path] = pkg.name

    for pkg in snapshot:
        others = [o for o in snapshot if o.name != pkg.name]
        for req in pkg.requires:
            if not _satisfied(req, others, compare):
                issues.append(f"{pkg.name} requires {req}, which nothing provides")
        for conflict in pkg.conflicts:
            for other in others:
                if provided_by(conflict, other.all_provides(), compare):
                    issues.append(f"{pkg.name} conflicts with installed {other.name} ({conflict})")
    return issues
