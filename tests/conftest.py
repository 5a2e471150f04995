"""
Shared fixtures for the fluidpkg test suite.

  - isolated_config (autouse): config file, cache and log dirs under tmp_path
  - root / db / installer: an initialized package root and its engine objects
  - make_archive: factory writing a zip package archive into tmp_path
"""

import json
import os

import pytest
import yaml

from fluidpkg.modules import config
from fluidpkg.modules.archive import MANIFEST_ENTRY, MemoryArchive, write_zip
from fluidpkg.modules.database import PackageDB
from fluidpkg.modules.manifest import Manifest
from fluidpkg.modules.transaction import Installer


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Never read or write the real ~/.config/fluidpkg or ~/.cache/fluidpkg."""
    cfg_path = tmp_path / "config" / "config.yml"
    cfg_path.parent.mkdir()
    cfg_path.write_text(yaml.safe_dump({
        "cache_dir": str(tmp_path / "cache"),
        "log_dir": str(tmp_path / "log"),
    }))
    monkeypatch.setenv("FLUIDPKG_CONFIG", str(cfg_path))
    monkeypatch.delenv("FLUIDPKG_ROOT", raising=False)
    config.load_config()
    yield cfg_path
    monkeypatch.delenv("FLUIDPKG_CONFIG", raising=False)
    config.load_config()


@pytest.fixture
def root(tmp_path):
    return config.init_root(str(tmp_path / "project"))


@pytest.fixture
def db(root):
    return PackageDB(root)


@pytest.fixture
def installer(root, db):
    return Installer(root, db=db)


def manifest_dict(name, version="1.0", release=0, **fields):
    data = {"name": name, "version": version, "release": release}
    data.update(fields)
    return data


def make_manifest(name, version="1.0", release=0, **fields):
    return Manifest.from_dict(manifest_dict(name, version, release, **fields))


def memory_archive(name, version="1.0", files=None, release=0, **fields):
    entries = {MANIFEST_ENTRY: json.dumps(manifest_dict(name, version, release, **fields)).encode()}
    for rel, data in (files or {}).items():
        entries["data/" + rel] = data
    return MemoryArchive(entries)


@pytest.fixture
def make_archive(tmp_path):
    """make_archive(name, version, files={rel: bytes}, release=0, **manifest_fields) -> zip path"""
    out_dir = tmp_path / "archives"
    out_dir.mkdir()

    def _make(name, version="1.0", files=None, release=0, **fields):
        path = os.path.join(str(out_dir), f"{name}-{version}-{release}.zip")
        return write_zip(path, manifest_dict(name, version, release, **fields), files or {})

    return _make


def read(root, rel):
    with open(os.path.join(root, rel), "rb") as f:
        return f.read()
