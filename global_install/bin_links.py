"""
bin_links.py - Command entries in a namespace's bin directory.

posix: one relative symlink per command
    bin/<cmd> -> ../lib/node_modules/<pkg>/<path>

win32: three shim files per command (no symlinks needed)
    <cmd>      - sh script (Git Bash, Cygwin)
    <cmd>.cmd  - cmd.exe batch file
    <cmd>.ps1  - PowerShell script

Every entry is written to a temporary name and moved over the final name
with os.replace, so a command never goes missing while it is rewritten.
"""
from __future__ import annotations

import logging
import os
import posixpath
import re
import shutil
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from global_install.errors import LinkConflict
from global_install.packages import Manifest
from global_install.paths import GlobalNamespace, is_inside
from global_install.resolve import shim_target


logger = logging.getLogger(__name__)

SHIM_SUFFIXES = ("", ".cmd", ".ps1")
_SHEBANG_RE = re.compile(r"^#!\s*(?:/usr/bin/env\s+(?:-S\s+)?)?(?P<prog>[^\s]+)(?P<args>.*)$")


def entry_names(command: str, ns: GlobalNamespace) -> List[str]:
    """All bin directory names that make up one command on this platform."""
    if ns.is_windows:
        return [command + suffix for suffix in SHIM_SUFFIXES]
    return [command]


def entry_target(ns: GlobalNamespace, entry: Path) -> Optional[Path]:
    """Where a bin entry points, without requiring the target to exist.

    Returns None for entries that are neither symlinks nor shims we wrote.
    """
    if entry.is_symlink():
        raw = os.readlink(entry)
        return Path(os.path.normpath(os.path.join(entry.parent, raw)))
    if ns.is_windows:
        return shim_target(entry)
    return None


def owning_package(ns: GlobalNamespace, target: Optional[Path]) -> Optional[str]:
    """Package name whose directory contains `target`, if any."""
    if target is None or not is_inside(target, ns.module_root):
        return None
    parts = Path(os.path.abspath(target)).relative_to(os.path.abspath(ns.module_root)).parts
    if not parts or parts[0].startswith("."):
        return None
    if parts[0].startswith("@"):
        return "/".join(parts[:2]) if len(parts) >= 2 else None
    return parts[0]


def command_owner(ns: GlobalNamespace, command: str) -> Optional[str]:
    """Package owning the bin entry for `command`, or None."""
    for name in entry_names(command, ns):
        entry = ns.bin_dir / name
        owner = owning_package(ns, entry_target(ns, entry))
        if owner:
            return owner
    return None


def _exists(path: Path) -> bool:
    return path.exists() or path.is_symlink()


def _replace_symlink(target_rel: str, link: Path) -> None:
    tmp = link.with_name(f".{link.name}.{uuid.uuid4().hex[:8]}")
    os.symlink(target_rel, tmp)
    try:
        os.replace(tmp, link)
    except OSError:
        tmp.unlink()
        raise


def _replace_file(path: Path, content: str, mode: int = 0o755) -> None:
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}")
    with open(tmp, "w", encoding="utf-8", newline="") as f:
        f.write(content)
    os.chmod(tmp, mode)
    try:
        os.replace(tmp, path)
    except OSError:
        tmp.unlink()
        raise


def _shebang_program(target: Path) -> Optional[str]:
    """Interpreter named by a script's shebang line (basename), if any."""
    try:
        with open(target, "r", encoding="utf-8", errors="replace") as f:
            first = f.readline().strip()
    except OSError:
        return None
    m = _SHEBANG_RE.match(first)
    if not m:
        return None
    return posixpath.basename(m.group("prog")) + m.group("args").rstrip()


def _shim_texts(target_rel_win: str, target_rel_posix: str, prog: Optional[str]) -> Dict[str, str]:
    if prog:
        cmd_run = f'"{prog}" "%_target%" %*'
        sh_run = f'exec {prog} "$basedir/{target_rel_posix}" "$@"'
        ps1_run = f'& "{prog}" "$basedir/{target_rel_posix}" $args'
    else:
        cmd_run = '"%_target%" %*'
        sh_run = f'exec "$basedir/{target_rel_posix}" "$@"'
        ps1_run = f'& "$basedir/{target_rel_posix}" $args'

    return {
        ".cmd": (
            "@ECHO off\r\n"
            "SETLOCAL\r\n"
            f'SET "_target=%~dp0\\{target_rel_win}"\r\n'
            f"{cmd_run}\r\n"
        ),
        "": (
            "#!/bin/sh\n"
            'basedir=$(dirname "$(echo "$0" | sed -e \'s,\\\\,/,g\')")\n'
            f"{sh_run}\n"
        ),
        ".ps1": (
            "#!/usr/bin/env pwsh\n"
            "$basedir=Split-Path $MyInvocation.MyCommand.Definition -Parent\n"
            f"{ps1_run}\n"
            "exit $LASTEXITCODE\n"
        ),
    }


def _read_text(path: Path) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            return f.read()
    except (OSError, UnicodeDecodeError):
        return None


def _make_executable(path: Path) -> None:
    if path.is_file():
        mode = path.stat().st_mode
        os.chmod(path, mode | 0o111)


def link_command(ns: GlobalNamespace, command: str, target: Path) -> List[Path]:
    """Write (or overwrite) the entries for one command pointing at `target`."""
    ns.bin_dir.mkdir(parents=True, exist_ok=True)
    _make_executable(target)
    rel = os.path.relpath(target, ns.bin_dir)
    written: List[Path] = []

    if ns.is_windows:
        texts = _shim_texts(rel.replace("/", "\\"), rel.replace("\\", "/"), _shebang_program(target))
        for suffix in SHIM_SUFFIXES:
            entry = ns.bin_dir / (command + suffix)
            if entry.is_symlink() or entry.is_dir():
                _remove_entry(entry)
            elif _read_text(entry) == texts[suffix]:
                written.append(entry)
                continue
            _replace_file(entry, texts[suffix])
            written.append(entry)
    else:
        entry = ns.bin_dir / command
        if entry.is_dir() and not entry.is_symlink():
            _remove_entry(entry)
        if not (entry.is_symlink() and os.readlink(entry) == rel):
            _replace_symlink(rel, entry)
        written.append(entry)

    logger.debug("linked %s -> %s", command, target)
    return written


def _remove_entry(entry: Path) -> None:
    if entry.is_dir() and not entry.is_symlink():
        shutil.rmtree(entry)
    else:
        entry.unlink()


def check_conflicts(ns: GlobalNamespace, manifest: Manifest, force: bool = False) -> None:
    """Raise LinkConflict when a command is taken by another package or file."""
    if force:
        return
    for command in manifest.bin:
        for name in entry_names(command, ns):
            entry = ns.bin_dir / name
            if not _exists(entry):
                continue
            owner = owning_package(ns, entry_target(ns, entry))
            if owner == manifest.name:
                continue
            raise LinkConflict(command, owner or str(entry))


def link_bins(ns: GlobalNamespace, manifest: Manifest, package_dir: Path) -> List[str]:
    """Create entries for every command the manifest declares.

    Commands whose target file is missing from the package are skipped with
    a warning rather than leaving a dangling entry.
    """
    linked = []
    for command, rel_target in manifest.bin.items():
        target = package_dir / rel_target
        if not target.is_file():
            logger.warning("%s: bin target %s for '%s' does not exist, not linking", manifest.id, rel_target, command)
            continue
        link_command(ns, command, target)
        linked.append(command)
    return linked


def unlink_commands(ns: GlobalNamespace, commands: Iterable[str], package_name: str) -> List[str]:
    """Remove entries for `commands` that belong to `package_name` (or dangle).

    Entries owned by other packages are left alone.
    """
    removed = []
    for command in commands:
        # Targets are read before anything is removed: win32 companions are
        # only parseable while the .cmd shim exists
        doomed = []
        for name in entry_names(command, ns):
            entry = ns.bin_dir / name
            if not _exists(entry):
                continue
            target = entry_target(ns, entry)
            owner = owning_package(ns, target)
            dangling = target is not None and not target.exists()
            if owner == package_name or (owner is None and dangling):
                doomed.append(entry)
        for entry in doomed:
            _remove_entry(entry)
        if doomed:
            removed.append(command)
            logger.debug("unlinked %s", command)
    return removed


def commands_owned_by(ns: GlobalNamespace, package_name: str) -> List[str]:
    """Commands currently in the bin directory that point into package_name."""
    if not ns.bin_dir.is_dir():
        return []
    owned = set()
    for entry in ns.bin_dir.iterdir():
        if entry.name.startswith("."):
            continue
        if owning_package(ns, entry_target(ns, entry)) == package_name:
            name = entry.name
            if ns.is_windows:
                for suffix in SHIM_SUFFIXES[1:]:
                    if name.lower().endswith(suffix):
                        name = name[: -len(suffix)]
                        break
            owned.add(name)
    return sorted(owned)
