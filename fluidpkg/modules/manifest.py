#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
manifest.py - package manifest model

- Manifest: immutable identity + provides/requires/conflicts + descriptive fields
- load(archive): reads package/manifest.json and validates it
- Every provides/requires/conflicts string is parsed by the constraint grammar
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from fluidpkg.modules import constraint as cons
from fluidpkg.modules.archive import MANIFEST_ENTRY, Archive
from fluidpkg.modules.constraint import Constraint
from fluidpkg.modules.errors import MalformedManifest, MissingManifestEntry

REQUIRED_FIELDS = ["name", "version"]
CONSTRAINT_FIELDS = ["provides", "requires", "conflicts"]
DESCRIPTIVE_FIELDS = ["author", "packager", "url", "summary", "description"]


@dataclass(frozen=True)
class Manifest:
    name: str
    version: str
    release: int = 0
    provides: Tuple[Constraint, ...] = ()
    requires: Tuple[Constraint, ...] = ()
    conflicts: Tuple[Constraint, ...] = ()
    author: Optional[Any] = None
    packager: Optional[Any] = None
    url: Optional[Any] = None
    summary: Optional[Any] = None
    description: Optional[Any] = None

    @property
    def id(self) -> str:
        return f"{self.name}-{self.version}-{self.release}"

    def self_provide(self) -> Constraint:
        return Constraint(self.name, "==", self.version)

    def all_provides(self) -> Tuple[Constraint, ...]:
        """Declared provides plus the implicit name==version, without duplicates."""
        out = [self.self_provide()]
        for p in self.provides:
            if p not in out:
                out.append(p)
        return tuple(out)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        validate(data)
        return cls(
            name=data["name"],
            version=data["version"],
            release=data.get("release", 0),
            provides=cons.parse_all(data.get("provides") or []),
            requires=cons.parse_all(data.get("requires") or []),
            conflicts=cons.parse_all(data.get("conflicts") or []),
            **{k: data.get(k) for k in DESCRIPTIVE_FIELDS},
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "release": self.release,
            "provides": cons.format_all(self.provides),
            "requires": cons.format_all(self.requires),
            "conflicts": cons.format_all(self.conflicts),
        }
        for k in DESCRIPTIVE_FIELDS:
            out[k] = getattr(self, k)
        return out


def validate(data: Any) -> None:
    """Schema checks; constraint strings are checked when parsed."""
    if not isinstance(data, dict):
        raise MalformedManifest("manifest must be a JSON object")

    for key in REQUIRED_FIELDS:
        if key not in data or data[key] is None:
            raise MalformedManifest(f"required field '{key}' is missing", key)
        if not isinstance(data[key], str):
            raise MalformedManifest(f"field '{key}' must be a string", key)

    if not cons.NAME_RE.match(data["name"]):
        raise MalformedManifest(f"invalid package name {data['name']!r}", "name")

    version = data["version"]
    if not version or any(ch.isspace() for ch in version):
        raise MalformedManifest(f"invalid version {version!r}", "version")

    release = data.get("release", 0)
    # bool is an int subclass
    if isinstance(release, bool) or not isinstance(release, int) or release < 0:
        raise MalformedManifest("field 'release' must be a non-negative integer", "release")

    for key in CONSTRAINT_FIELDS:
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, list) or not all(isinstance(s, str) for s in value):
            raise MalformedManifest(f"field '{key}' must be a list of strings", key)


def load(archive: Archive) -> Manifest:
    """Read and validate the manifest of an archive. No side effects."""
    entry = archive.find(MANIFEST_ENTRY)
    if entry is None:
        raise MissingManifestEntry(MANIFEST_ENTRY)
    raw = entry.read()
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedManifest(f"{MANIFEST_ENTRY} is not valid JSON: {e}") from e
    return Manifest.from_dict(data)


__all__ = ["Manifest", "load", "validate", "MalformedManifest", "MissingManifestEntry"]
