#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
config.py - fluidpkg configuration and package root discovery

- Supports $FLUIDPKG_CONFIG > ~/.config/fluidpkg/config.yml > /etc/fluidpkg/config.yml > defaults
- YAML files, read with yaml.safe_load
- get / set / all / reset, same shape as the rest of the modules expect
- resolve_root(): marker directory in cwd or an ancestor > $FLUIDPKG_ROOT > "root" key
"""

from __future__ import annotations

import os
import yaml

from fluidpkg.modules.errors import RootNotFound

# Default paths
USER_CONFIG = os.path.expanduser("~/.config/fluidpkg/config.yml")
SYSTEM_CONFIG = "/etc/fluidpkg/config.yml"
ROOT_ENV = "FLUIDPKG_ROOT"

DEFAULTS = {
    # Package root
    "root": None,
    "root_marker": ".fluidpkg",

    # Directories
    "cache_dir": os.path.expanduser("~/.cache/fluidpkg"),
    "log_dir": os.path.expanduser("~/.cache/fluidpkg/log"),
    "log_level": "info",

    # Repository
    "repo_url": None,
    "http_timeout": 30,

    # Engine
    "version_scheme": "dotted",  # dotted | lexical
    "lock_wait": True,
}

_config = DEFAULTS.copy()


def _load_from(path: str) -> dict:
    """Load a YAML config file; a missing file or non-mapping yields {}."""
    if not os.path.isfile(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


def load_config() -> dict:
    """Load config following env > user > system > defaults."""
    global _config

    env_path = os.getenv("FLUIDPKG_CONFIG")
    if env_path and os.path.exists(env_path):
        _config = {**DEFAULTS, **_load_from(env_path)}
        return _config

    if os.path.exists(USER_CONFIG):
        _config = {**DEFAULTS, **_load_from(USER_CONFIG)}
        return _config

    if os.path.exists(SYSTEM_CONFIG):
        _config = {**DEFAULTS, **_load_from(SYSTEM_CONFIG)}
        return _config

    _config = DEFAULTS.copy()
    return _config


def _save(cfg: dict, system: bool = False) -> None:
    if system:
        path = SYSTEM_CONFIG
    else:
        path = os.getenv("FLUIDPKG_CONFIG") or USER_CONFIG
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, default_flow_style=False, allow_unicode=True)


def get(key: str, default=None):
    """Value of a config key, falling back to DEFAULTS then to `default`."""
    value = _config.get(key, DEFAULTS.get(key))
    return default if value is None else value


def set(key: str, value, system: bool = False):
    """Set a key and persist it to config.yml."""
    cfg = load_config()
    cfg[key] = value
    _save(cfg, system=system)
    _config.update(cfg)


def all() -> dict:
    return load_config()


def reset(system: bool = False):
    """Restore default values."""
    _save(DEFAULTS.copy(), system=system)
    load_config()


# -------------------------
# Package root discovery
# -------------------------
def marker_name() -> str:
    return get("root_marker", ".fluidpkg")


def state_dir(root: str) -> str:
    """Directory holding the database, lock and staging area of a root."""
    return os.path.join(root, marker_name())


def find_marker_root(start: str) -> str | None:
    """Walk from `start` up to the filesystem root looking for the marker."""
    current = os.path.abspath(start)
    while True:
        if os.path.isdir(os.path.join(current, marker_name())):
            return current
        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent


def resolve_root(start: str | None = None) -> str:
    """
    Resolve the package root:
      1. marker directory in `start` (default: cwd) or an ancestor
      2. $FLUIDPKG_ROOT
      3. "root" in the loaded config
    Raises RootNotFound otherwise.
    """
    start = start or os.getcwd()
    found = find_marker_root(start)
    if found:
        return found

    env_root = os.getenv(ROOT_ENV)
    if env_root:
        return os.path.abspath(env_root)

    cfg_root = get("root")
    if cfg_root:
        return os.path.abspath(os.path.expanduser(cfg_root))

    raise RootNotFound(start)


def init_root(path: str) -> str:
    """Create the marker directory, turning `path` into a package root."""
    root = os.path.abspath(path)
    os.makedirs(state_dir(root), exist_ok=True)
    return root


# Load config on import
load_config()
