#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
repository.py - repository index lookup and archive fetch

Index format (JSON):
    {"packages": {"<name>": {"<version>": "<archive filename>"}}}

Keys may be package names or any name a package provides. Archive
filenames are relative to the index location (a directory or an http(s)
base URL).

- RepoIndex.load(source): local path or http(s) URL (requests)
- candidates(constraint): matching (version, location), newest first
- fetch(constraint, cache_dir): local path of the best matching archive,
  downloading it into the cache when the repository is remote
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Dict, List, Optional
from urllib.parse import urljoin, urlparse

import requests

from fluidpkg.modules import config, log, utils
from fluidpkg.modules import constraint as cons
from fluidpkg.modules.constraint import Constraint
from fluidpkg.modules.errors import RepositoryError

logger = log.get_logger("repository")

INDEX_NAME = "index.json"


def is_url(source: str) -> bool:
    return urlparse(source).scheme in ("http", "https")


@dataclass(frozen=True)
class Candidate:
    name: str
    version: str
    location: str

    def to_dict(self) -> dict:
        return {"name": self.name, "version": self.version, "location": self.location}


class RepoIndex:
    def __init__(self, packages: Dict[str, Dict[str, str]], base: str):
        self.packages = packages
        self.base = base

    # -------------------------
    # Loading
    # -------------------------
    @classmethod
    def load(cls, source: str, timeout: Optional[int] = None) -> "RepoIndex":
        """
        `source` is an index file, a directory containing index.json, or an
        http(s) URL of either.
        """
        if is_url(source):
            url = source if source.endswith(".json") else urljoin(source.rstrip("/") + "/", INDEX_NAME)
            timeout = timeout or config.get("http_timeout", 30)
            logger.info("Fetching repository index %s", url)
            try:
                r = requests.get(url, timeout=timeout)
                r.raise_for_status()
                data = r.json()
            except requests.RequestException as e:
                raise RepositoryError(f"Cannot fetch repository index {url}: {e}") from e
            except ValueError as e:
                raise RepositoryError(f"Repository index {url} is not valid JSON: {e}") from e
            base = url.rsplit("/", 1)[0] + "/"
        else:
            path = os.path.join(source, INDEX_NAME) if os.path.isdir(source) else source
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except OSError as e:
                raise RepositoryError(f"Cannot read repository index {path}: {e}") from e
            except json.JSONDecodeError as e:
                raise RepositoryError(f"Repository index {path} is not valid JSON: {e}") from e
            base = os.path.dirname(os.path.abspath(path))

        return cls(cls._validate(data, source), base)

    @staticmethod
    def _validate(data, source: str) -> Dict[str, Dict[str, str]]:
        packages = data.get("packages") if isinstance(data, dict) else None
        if not isinstance(packages, dict):
            raise RepositoryError(f"Repository index {source} has no 'packages' mapping")
        for name, versions in packages.items():
            if not isinstance(versions, dict) or not all(
                    isinstance(v, str) and isinstance(ref, str) for v, ref in versions.items()):
                raise RepositoryError(f"Repository index {source}: bad entry for {name!r}")
        return packages

    # -------------------------
    # Lookup
    # -------------------------
    def archive_location(self, ref: str) -> str:
        if is_url(ref) or os.path.isabs(ref):
            return ref
        if is_url(self.base):
            return urljoin(self.base, ref)
        return os.path.join(self.base, ref)

    def candidates(self, constraint: Constraint, compare=None) -> List[Candidate]:
        compare = compare or cons.get_comparator()
        versions = self.packages.get(constraint.name, {})
        out = [
            Candidate(constraint.name, version, self.archive_location(ref))
            for version, ref in versions.items()
            if cons.satisfies(constraint, constraint.name, version, compare)
        ]
        out.sort(key=cmp_to_key(lambda a, b: compare(a.version, b.version)), reverse=True)
        return out

    def best(self, constraint: Constraint, compare=None) -> Candidate:
        found = self.candidates(constraint, compare)
        if not found:
            raise RepositoryError(f"No package in the repository satisfies {constraint}")
        return found[0]

    # -------------------------
    # Fetch
    # -------------------------
    def fetch(self, constraint: Constraint, cache_dir: Optional[str] = None,
              compare=None) -> str:
        """Local path of the best archive for `constraint`."""
        candidate = self.best(constraint, compare)
        location = candidate.location
        if not is_url(location):
            if not os.path.isfile(location):
                raise RepositoryError(f"Archive {location} listed in the index does not exist")
            return location

        cache_dir = cache_dir or os.path.join(config.get("cache_dir"), "archives")
        dest = os.path.join(cache_dir, os.path.basename(urlparse(location).path))
        try:
            return utils.download(location, dest, timeout=config.get("http_timeout", 30))
        except requests.RequestException as e:
            raise RepositoryError(f"Cannot download {location}: {e}") from e
