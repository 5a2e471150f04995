#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
cli.py - fluidpkg command line

fluidpkg [--root DIR] [--json] [-v] <command> ...

Exit codes: 0 ok, 1 nothing done / issues found, 2 error.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

import yaml

from fluidpkg import __version__
from fluidpkg.modules import config as config_mod
from fluidpkg.modules import constraint as cons
from fluidpkg.modules import log as log_mod
from fluidpkg.modules import query as query_mod
from fluidpkg.modules.database import PackageDB
from fluidpkg.modules.errors import FluidpkgError, RepositoryError
from fluidpkg.modules.repository import RepoIndex
from fluidpkg.modules.transaction import Installer

# ANSI colors
C = {
    "reset": "\033[0m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "magenta": "\033[35m",
    "cyan": "\033[36m",
    "bold": "\033[1m",
}

logger = log_mod.get_logger("cli")


def color(text: str, col: str) -> str:
    if not sys.stdout.isatty():
        return text
    return f"{C.get(col, '')}{text}{C['reset']}"


def _print_json_or_plain(data: Any, as_json: bool) -> None:
    if as_json:
        print(json.dumps(data, ensure_ascii=False, indent=2))
    else:
        if isinstance(data, dict):
            for k, v in data.items():
                if isinstance(v, list):
                    v = ", ".join(str(x) for x in v) or "-"
                print(f"{color(str(k), 'cyan')}: {v}")
        elif isinstance(data, list):
            for item in data:
                print(item)
        else:
            print(data)


def _print_packages(pkgs, as_json: bool) -> None:
    if as_json:
        _print_json_or_plain(pkgs, True)
        return
    for p in pkgs:
        line = f"{color(p['name'], 'cyan')} {color(p['version'], 'magenta')}-{p['release']}"
        if p.get("summary"):
            line += f"  {p['summary']}"
        print(line)


def _error(e: Exception) -> int:
    print(color(f"[ERROR] {e}", "red"), file=sys.stderr)
    return 2


def _setup_logging(verbose: bool) -> None:
    log_mod.set_level("debug" if verbose else config_mod.get("log_level", "info"))
    try:
        log_mod.enable_file_logging(config_mod.get("log_dir"))
    except OSError as e:
        logger.warning("File logging disabled: %s", e)


def _root(args) -> str:
    if getattr(args, "root", None):
        return os.path.abspath(args.root)
    return config_mod.resolve_root()


def _db(args) -> PackageDB:
    return PackageDB(_root(args))


def _installer(args) -> Installer:
    return Installer(_root(args), wait=False if getattr(args, "no_wait", False) else None)


# ---------------------------
# Root
# ---------------------------

def cmd_init(args):
    """
    fluidpkg init [path]
    """
    root = config_mod.init_root(args.path or args.root or os.getcwd())
    _print_json_or_plain({"root": root, "state": config_mod.state_dir(root)}, args.json)
    return 0


def cmd_root(args):
    """
    fluidpkg root
    """
    try:
        root = _root(args)
    except FluidpkgError as e:
        return _error(e)
    _print_json_or_plain({"root": root} if args.json else root, args.json)
    return 0


# ---------------------------
# Transactions
# ---------------------------

def _resolve_archive(args) -> str:
    target = args.target
    if os.path.isfile(target):
        return target
    constraint = cons.parse(target)
    source = args.repo or config_mod.get("repo_url")
    if not source:
        raise RepositoryError(f"{target} is not a file and no repository is configured (--repo or repo_url)")
    index = RepoIndex.load(source)
    return index.fetch(constraint)


def cmd_install(args):
    """
    fluidpkg install <archive|constraint> [--repo SRC]
    """
    try:
        archive_path = _resolve_archive(args)
        installer = _installer(args)
        tx = installer.install_file(archive_path)
    except FluidpkgError as e:
        return _error(e)

    if args.json:
        _print_json_or_plain(tx.to_dict(), True)
        return 0
    rec = tx.record
    msg = f"[OK] Installed {rec.name} {rec.version}-{rec.release} ({len(rec.files)} files)"
    if tx.replaced is not None:
        msg += f", replacing {tx.replaced.version}-{tx.replaced.release}"
    print(color(msg, "green"))
    return 0


def cmd_remove(args):
    """
    fluidpkg remove <name> [--cascade]
    """
    try:
        tx = _installer(args).remove(args.name, cascade=args.cascade)
    except FluidpkgError as e:
        return _error(e)
    if args.json:
        _print_json_or_plain(tx.to_dict(), True)
    else:
        print(color(f"[OK] Removed {', '.join(tx.removed)}", "green"))
    return 0


def cmd_recover(args):
    """
    fluidpkg recover
    """
    try:
        report = _installer(args).recover()
    except FluidpkgError as e:
        return _error(e)
    if report is None:
        if args.json:
            _print_json_or_plain({"action": "none"}, True)
        else:
            print(color("[OK] Nothing to recover", "green"))
        return 1
    report.pop("rerun", None)
    _print_json_or_plain(report, args.json)
    return 0


# ---------------------------
# Queries
# ---------------------------

def cmd_list(args):
    """
    fluidpkg list
    """
    try:
        pkgs = query_mod.list_installed(_db(args))
    except FluidpkgError as e:
        return _error(e)
    _print_packages(pkgs, args.json)
    return 0


def cmd_info(args):
    try:
        data = query_mod.query_package(_db(args), args.name)
    except FluidpkgError as e:
        return _error(e)
    _print_json_or_plain(data, args.json)
    return 0


def cmd_files(args):
    try:
        files = query_mod.files_of(_db(args), args.name)
    except FluidpkgError as e:
        return _error(e)
    if args.json:
        _print_json_or_plain(files, True)
    else:
        for f in files:
            print(f["path"])
    return 0


def cmd_owner(args):
    try:
        owner = query_mod.owner_of(_db(args), args.path)
    except FluidpkgError as e:
        return _error(e)
    if owner is None:
        if args.json:
            _print_json_or_plain({"path": args.path, "owner": None}, True)
        else:
            print(color(f"[WARN] {args.path} is not owned by any package", "yellow"))
        return 1
    _print_json_or_plain({"path": args.path, "owner": owner} if args.json else owner, args.json)
    return 0


def cmd_provides(args):
    try:
        pkgs = query_mod.what_provides(_db(args), args.constraint)
    except FluidpkgError as e:
        return _error(e)
    _print_packages(pkgs, args.json)
    return 0 if pkgs else 1


def cmd_requires(args):
    """
    fluidpkg requires <name>   (installed packages that depend on <name>)
    """
    try:
        names = query_mod.who_requires(_db(args), args.name)
    except FluidpkgError as e:
        return _error(e)
    _print_json_or_plain(names, args.json)
    return 0


def cmd_search(args):
    try:
        pkgs = query_mod.search_installed(_db(args), args.pattern)
    except FluidpkgError as e:
        return _error(e)
    _print_packages(pkgs, args.json)
    return 0 if pkgs else 1


def cmd_verify(args):
    """
    fluidpkg verify [name]

    Without a name, every package is checked plus the database invariants.
    """
    try:
        db = _db(args)
        if args.name:
            reports = [query_mod.verify_package(db, args.name)]
            audit = None
        else:
            reports = query_mod.verify_all(db)
            audit = query_mod.audit(db)
    except FluidpkgError as e:
        return _error(e)

    ok = all(r["ok"] for r in reports) and (audit is None or audit["ok"])
    if args.json:
        _print_json_or_plain({"packages": reports, "database": audit, "ok": ok}, True)
        return 0 if ok else 1

    for r in reports:
        if r["ok"]:
            print(f"{color('[OK]', 'green')} {r['name']}")
            continue
        print(f"{color('[FAIL]', 'red')} {r['name']}")
        for p in r["missing"]:
            print(f"    missing:  {p}")
        for p in r["modified"]:
            print(f"    modified: {p}")
    if audit is not None:
        for issue in audit["issues"]:
            print(color(f"[WARN] {issue}", "yellow"))
    return 0 if ok else 1


# ---------------------------
# Config
# ---------------------------

def cmd_config(args):
    """
    fluidpkg config get <key>
    fluidpkg config set <key> <value> [--system]
    fluidpkg config list
    fluidpkg config reset [--system]
    """
    act = args.action
    if act == "get":
        if not args.key:
            print("Usage: fluidpkg config get <key>")
            return 1
        _print_json_or_plain({args.key: config_mod.get(args.key)} if args.json
                             else config_mod.get(args.key), args.json)
        return 0
    if act == "set":
        if not args.key or args.value is None:
            print("Usage: fluidpkg config set <key> <value> [--system]")
            return 1
        value = yaml.safe_load(args.value)
        config_mod.set(args.key, value, system=args.system)
        print(f"[OK] {args.key} = {value!r} ({'system' if args.system else 'user'})")
        return 0
    if act == "list":
        allcfg = config_mod.all()
        if args.json:
            _print_json_or_plain(allcfg, True)
        else:
            for k, v in allcfg.items():
                print(f"{k}: {v}")
        return 0
    config_mod.reset(system=args.system)
    print(f"[OK] {'System' if args.system else 'User'} configuration restored to defaults")
    return 0


# ---------------------------
# Parser
# ---------------------------

def build_parser():
    p = argparse.ArgumentParser(prog="fluidpkg", description="fluidpkg - per-project package manager")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--verbose", "-v", action="store_true", help="Debug output")
    p.add_argument("--json", action="store_true", help="JSON output")
    p.add_argument("--root", default=None, help="Package root (default: discovered)")
    p.add_argument("--no-wait", action="store_true", help="Fail instead of waiting for the root lock")
    sub = p.add_subparsers(dest="command")

    s = sub.add_parser("init", help="Turn a directory into a package root")
    s.add_argument("path", nargs="?")
    s.set_defaults(func=cmd_init)

    s = sub.add_parser("root", help="Print the discovered package root")
    s.set_defaults(func=cmd_root)

    s = sub.add_parser("install", aliases=["i"], help="Install or upgrade a package")
    s.add_argument("target", help="Archive path, or a constraint looked up in the repository")
    s.add_argument("--repo", default=None, help="Repository index (path or URL)")
    s.set_defaults(func=cmd_install)

    s = sub.add_parser("remove", aliases=["rm"], help="Remove a package")
    s.add_argument("name")
    s.add_argument("--cascade", action="store_true", help="Also remove packages that depend on it")
    s.set_defaults(func=cmd_remove)

    s = sub.add_parser("list", aliases=["ls"], help="List installed packages")
    s.set_defaults(func=cmd_list)

    s = sub.add_parser("info", help="Show an installed package")
    s.add_argument("name")
    s.set_defaults(func=cmd_info)

    s = sub.add_parser("files", help="List files owned by a package")
    s.add_argument("name")
    s.set_defaults(func=cmd_files)

    s = sub.add_parser("owner", help="Show which package owns a path")
    s.add_argument("path")
    s.set_defaults(func=cmd_owner)

    s = sub.add_parser("provides", help="Installed packages satisfying a constraint")
    s.add_argument("constraint")
    s.set_defaults(func=cmd_provides)

    s = sub.add_parser("requires", help="Installed packages depending on a package")
    s.add_argument("name")
    s.set_defaults(func=cmd_requires)

    s = sub.add_parser("search", aliases=["s"], help="Search installed packages")
    s.add_argument("pattern")
    s.set_defaults(func=cmd_search)

    s = sub.add_parser("verify", aliases=["check"], help="Check installed files and database")
    s.add_argument("name", nargs="?")
    s.set_defaults(func=cmd_verify)

    s = sub.add_parser("recover", help="Finish or roll back an interrupted operation")
    s.set_defaults(func=cmd_recover)

    s = sub.add_parser("config", help="Manage configuration")
    s.add_argument("action", choices=["get", "set", "list", "reset"])
    s.add_argument("key", nargs="?")
    s.add_argument("value", nargs="?")
    s.add_argument("--system", action="store_true", help="Use the system config (/etc)")
    s.set_defaults(func=cmd_config)

    return p


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    _setup_logging(args.verbose)

    try:
        rc = args.func(args)
    except FluidpkgError as e:
        rc = _error(e)
    except Exception as e:
        log_mod.exception("Command failed")
        rc = _error(e)
    sys.exit(rc if isinstance(rc, int) else 0)


if __name__ == "__main__":
    main()
