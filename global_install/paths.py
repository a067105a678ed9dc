"""
paths.py - Global namespace layout.

A namespace is a prefix directory with a bin directory and a module root:

| Platform | bin_dir        | module_root              |
|----------|----------------|--------------------------|
| posix    | <prefix>/bin   | <prefix>/lib/node_modules |
| win32    | <prefix>       | <prefix>/node_modules     |

All mutation of a namespace goes through global_install.install; this module
only computes locations.
"""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


MODULE_DIR_NAME = "node_modules"
STATE_DIR_NAME = ".global-install"
PREFIX_ENV = "GLOBAL_INSTALL_PREFIX"


def current_platform() -> str:
    """Return the layout family for this interpreter: 'win32' or 'posix'."""
    return "win32" if sys.platform == "win32" else "posix"


def default_prefix() -> Path:
    """Prefix for the ambient global namespace.

    Priority:
    1) GLOBAL_INSTALL_PREFIX environment variable
    2) The interpreter's own prefix (sys.prefix)
    """
    env = os.getenv(PREFIX_ENV)
    if env:
        return Path(env).expanduser().resolve()
    return Path(sys.prefix).resolve()


@dataclass(frozen=True)
class GlobalNamespace:
    """Bin directory + module root pair that packages are installed into.

    Attributes:
        prefix: Root of the namespace
        bin_dir: Directory holding command entries
        module_root: Directory holding one directory per installed package
        platform: "posix" or "win32"; decides layout and bin entry format
    """
    prefix: Path
    bin_dir: Path
    module_root: Path
    platform: str = "posix"

    @classmethod
    def from_prefix(cls, prefix: Path, platform: Optional[str] = None) -> "GlobalNamespace":
        platform = platform or current_platform()
        prefix = Path(prefix).expanduser().absolute()
        if platform == "win32":
            return cls(prefix, prefix, prefix / MODULE_DIR_NAME, platform)
        return cls(prefix, prefix / "bin", prefix / "lib" / MODULE_DIR_NAME, platform)

    @property
    def state_dir(self) -> Path:
        """Staging/lock/journal directory. Same filesystem as module_root."""
        return self.module_root / STATE_DIR_NAME

    @property
    def is_windows(self) -> bool:
        return self.platform == "win32"

    def package_dir(self, name: str) -> Path:
        """Directory for package `name` (handles @scope/name)."""
        validate_package_name(name)
        return self.module_root.joinpath(*name.split("/"))

    def exists(self) -> bool:
        return self.module_root.is_dir()


def validate_package_name(name: str) -> None:
    """Reject names that would escape the module root."""
    parts = name.split("/")
    if name.startswith("@"):
        ok = len(parts) == 2 and all(parts) and parts[1][0] not in "._"
    else:
        ok = len(parts) == 1 and bool(name) and name[0] not in "._"
    if not ok or any(p in ("..", ".") or "\\" in p for p in parts):
        raise ValueError(f"Invalid package name: {name!r}")


def is_inside(path: Path, root: Path) -> bool:
    """True when `path` is `root` or below it (no symlink resolution)."""
    try:
        Path(os.path.abspath(path)).relative_to(os.path.abspath(root))
        return True
    except ValueError:
        return False
