#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/constraint.py - name/version constraint grammar

- Constraint: name, optional operator (==, >=, >, <, <=) and version token
- parse(): splits on the first comparator, longest match first
- satisfies(): tests a (name, version) candidate against a constraint
- Pluggable version comparison: "dotted" (default) and "lexical" schemes,
  or any callable (a, b) -> int
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from fluidpkg.modules.errors import InvalidConstraintFormat

NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")

# Longest first, so ">=" wins over ">" at the same position
OPERATORS = ("==", ">=", "<=", ">", "<")

VersionComparator = Callable[[str, str], int]


# ---------------------------------------------------------------------
# Version comparison
# ---------------------------------------------------------------------

def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def compare_dotted(a: str, b: str) -> int:
    """
    Dotted comparison: segment by segment, integers when both segments are
    numeric, otherwise lexical. Missing trailing segments count as "0", so
    "1.0" == "1.0.0".
    """
    left = a.split(".")
    right = b.split(".")
    width = max(len(left), len(right))
    left += ["0"] * (width - len(left))
    right += ["0"] * (width - len(right))
    for x, y in zip(left, right):
        if x.isdigit() and y.isdigit():
            result = _cmp(int(x), int(y))
        else:
            result = _cmp(x, y)
        if result:
            return result
    return 0


def compare_lexical(a: str, b: str) -> int:
    return _cmp(a, b)


COMPARATORS: Dict[str, VersionComparator] = {
    "dotted": compare_dotted,
    "lexical": compare_lexical,
}


def get_comparator(scheme: Optional[str] = None) -> VersionComparator:
    """Comparator for a named scheme; None means the configured default."""
    if scheme is None:
        from fluidpkg.modules import config
        scheme = config.get("version_scheme", "dotted")
    try:
        return COMPARATORS[scheme]
    except KeyError:
        raise ValueError(f"Unknown version scheme: {scheme}") from None


def compare_versions(a: str, b: str, compare: Optional[VersionComparator] = None) -> int:
    return (compare or compare_dotted)(a, b)


def compare_packages(left: Tuple[str, int], right: Tuple[str, int],
                     compare: Optional[VersionComparator] = None) -> int:
    """Compare (version, release) pairs; release breaks ties between equal versions."""
    result = compare_versions(left[0], right[0], compare)
    if result:
        return result
    return _cmp(left[1], right[1])


# ---------------------------------------------------------------------
# Constraint
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Constraint:
    """
    A name, optionally restricted to versions relative to `version`.
    A bare name (operator None) means any version.
    """
    name: str
    operator: Optional[str] = None
    version: Optional[str] = None

    def __str__(self) -> str:
        if self.operator is None:
            return self.name
        return f"{self.name}{self.operator}{self.version}"

    @property
    def is_bare(self) -> bool:
        return self.operator is None


def parse(text: str) -> Constraint:
    """Parse 'name', or 'name<op><version>' into a Constraint."""
    if not isinstance(text, str):
        raise InvalidConstraintFormat(repr(text), "not a string")
    s = text.strip()

    pos, op = -1, None
    for i in range(len(s)):
        for candidate in OPERATORS:
            if s.startswith(candidate, i):
                pos, op = i, candidate
                break
        if op:
            break

    if op is None:
        if not NAME_RE.match(s):
            raise InvalidConstraintFormat(text, "invalid package name")
        return Constraint(s)

    name = s[:pos]
    version = s[pos + len(op):]
    if not NAME_RE.match(name):
        raise InvalidConstraintFormat(text, "invalid package name")
    if not version:
        raise InvalidConstraintFormat(text, f"missing version after {op}")
    if any(ch.isspace() for ch in version):
        raise InvalidConstraintFormat(text, "version contains whitespace")
    return Constraint(name, op, version)


def parse_all(items) -> Tuple[Constraint, ...]:
    return tuple(parse(s) for s in items)


def satisfies(constraint: Constraint, name: str, version: Optional[str],
              compare: Optional[VersionComparator] = None) -> bool:
    """Does the candidate (name, version) satisfy `constraint`?"""
    if constraint.name != name:
        return False
    if constraint.operator is None:
        return True
    if version is None:
        return False
    result = compare_versions(version, constraint.version, compare)
    op = constraint.operator
    if op == "==":
        return result == 0
    if op == ">=":
        return result >= 0
    if op == "<=":
        return result <= 0
    if op == ">":
        return result > 0
    return result < 0


def provided_by(constraint: Constraint, provides, compare: Optional[VersionComparator] = None) -> bool:
    """True if any provided Constraint (name + optional exact version) satisfies `constraint`."""
    for p in provides:
        if satisfies(constraint, p.name, p.version, compare):
            return True
    return False


def format_all(constraints) -> List[str]:
    return [str(c) for c in constraints]
