"""
resolve.py - Which file answers to a command name.

Usage:
    from global_install.resolve import resolve_command, which

    real = resolve_command("npm", [ns.bin_dir, "/usr/local/bin"])
    entry = which("npm", search_path=os.environ["PATH"])

Both return None when nothing matches; absence is not an error.
"""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

from global_install.paths import current_platform


SearchPath = Union[None, str, Sequence[Union[str, Path]]]

DEFAULT_PATHEXT = ".COM;.EXE;.BAT;.CMD;.PS1"

# Target line written by bin_links for win32 .cmd shims
_SHIM_TARGET_RE = re.compile(r'^@?SET\s+"?_target=(?P<target>[^"\r\n]+)"?', re.IGNORECASE | re.MULTILINE)


def search_dirs(search_path: SearchPath = None) -> List[Path]:
    """Expand a search context to an ordered list of directories."""
    if search_path is None:
        search_path = os.environ.get("PATH", "")
    if isinstance(search_path, str):
        entries: Iterable[Union[str, Path]] = search_path.split(os.pathsep)
    else:
        entries = search_path
    return [Path(e) for e in entries if str(e)]


def _extensions(platform: str) -> List[str]:
    if platform != "win32":
        return [""]
    pathext = os.environ.get("PATHEXT", DEFAULT_PATHEXT)
    return [""] + [e.lower() for e in pathext.split(";") if e]


def _is_executable(path: Path, platform: str) -> bool:
    if not path.is_file():
        return False
    if platform == "win32":
        return True
    return os.access(path, os.X_OK)


def find_entry(name: str, search_path: SearchPath = None, platform: Optional[str] = None) -> Optional[Path]:
    """First executable entry for `name` in the search context (not link-resolved)."""
    platform = platform or current_platform()
    exts = _extensions(platform)
    for directory in search_dirs(search_path):
        for ext in exts:
            candidate = directory / f"{name}{ext}"
            if _is_executable(candidate, platform):
                return candidate
    return None


def which(name: str, search_path: SearchPath = None, platform: Optional[str] = None) -> Optional[Path]:
    """Entry path for `name` with any executable extension stripped.

    `npm.cmd` and `npm` in the same directory both report `<dir>/npm`, so
    results from different platforms and contexts compare equal.
    """
    entry = find_entry(name, search_path, platform)
    if entry is None:
        return None
    if entry.suffix and entry.suffix.lower() in DEFAULT_PATHEXT.lower().split(";"):
        return entry.with_name(entry.stem)
    return entry


def shim_target(path: Path) -> Optional[Path]:
    """Target named by a win32 command shim set, without touching the target.

    `path` may be any member of the set (`cmd`, `cmd.cmd`, `cmd.ps1`); the
    `.cmd` member is the one parsed.
    """
    base = path.name
    for suffix in (".cmd", ".ps1"):
        if base.lower().endswith(suffix):
            base = base[: -len(suffix)]
            break
    shim = path.with_name(base + ".cmd")
    if not shim.is_file():
        return None
    try:
        text = shim.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    m = _SHIM_TARGET_RE.search(text)
    if not m:
        return None
    rel = m.group("target").replace("%~dp0\\", "").replace("%~dp0", "").replace("\\", "/")
    return Path(os.path.normpath(os.path.join(shim.parent, rel)))


def resolve_shim(path: Path) -> Optional[Path]:
    """Fully resolved target of a win32 shim, if `path` is one."""
    target = shim_target(path)
    return Path(os.path.realpath(target)) if target is not None else None


def resolve_command(name: str, search_path: SearchPath = None, platform: Optional[str] = None) -> Optional[Path]:
    """Terminal file answering to `name` in the search context.

    Follows the whole symlink chain (and win32 shims) to the underlying file.
    """
    platform = platform or current_platform()
    entry = find_entry(name, search_path, platform)
    if entry is None:
        return None
    if platform == "win32":
        target = resolve_shim(entry)
        if target is not None:
            return target
    return Path(os.path.realpath(entry))
