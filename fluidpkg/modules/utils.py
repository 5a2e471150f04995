from __future__ import annotations

import os
import json
import hashlib
import tempfile

import requests

from fluidpkg.modules import log

CHUNK_SIZE = 8192


# -------------------------
# Filesystem
# -------------------------
def ensure_dir(path: str):
    """Create a directory if missing"""
    os.makedirs(path, exist_ok=True)


def prune_empty_dirs(path: str, stop: str):
    """Remove empty directories from `path` upwards, never removing `stop`."""
    stop = os.path.abspath(stop)
    current = os.path.abspath(path)
    while current != stop and current.startswith(stop + os.sep):
        try:
            os.rmdir(current)
        except OSError:
            return
        current = os.path.dirname(current)


def fsync_dir(path: str):
    """fsync a directory so a rename inside it is durable"""
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


# -------------------------
# Integrity
# -------------------------
def sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def write_stream(src, dest: str) -> str:
    """Copy a binary stream into `dest`, returning the sha256 of what was written."""
    h = hashlib.sha256()
    with open(dest, "wb") as out:
        for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
            h.update(chunk)
            out.write(chunk)
        out.flush()
        os.fsync(out.fileno())
    return h.hexdigest()


# -------------------------
# JSON documents
# -------------------------
def load_json(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def atomic_write_json(path: str, data) -> None:
    """Write JSON through a temp file + fsync + os.replace."""
    directory = os.path.dirname(path) or "."
    ensure_dir(directory)
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    fsync_dir(directory)


# -------------------------
# Download
# -------------------------
def download(url: str, dest: str, timeout: int = 30, expected_sha256: str | None = None) -> str:
    """Download a file with cache reuse and optional SHA256 check"""
    ensure_dir(os.path.dirname(dest) or ".")

    if os.path.isfile(dest):
        log.info("Using cached file: %s", dest)
        if expected_sha256 and sha256_file(dest) != expected_sha256.lower():
            log.error("Hash mismatch for %s, downloading again", dest)
            os.remove(dest)
        else:
            return dest

    log.info("Downloading %s -> %s", url, dest)
    tmp = dest + ".part"
    with requests.get(url, stream=True, timeout=timeout) as r:
        r.raise_for_status()
        with open(tmp, "wb") as f:
            for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                f.write(chunk)
    os.replace(tmp, dest)

    if expected_sha256 and sha256_file(dest) != expected_sha256.lower():
        os.remove(dest)
        raise ValueError(f"Invalid SHA256 for {dest}")

    return dest
