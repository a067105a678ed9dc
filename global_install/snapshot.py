"""
snapshot.py - Point-in-time view of what occupies a namespace.

A PackageSnapshot is immutable; take a new one to observe change.

Usage:
    before = snapshot(ns, "npm")
    apply(op)
    after = snapshot(ns, "npm")
    assert after.bin_entries == ()
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from global_install.bin_links import entry_target, owning_package
from global_install.paths import MODULE_DIR_NAME, GlobalNamespace


# Bin directory names that are configuration, not commands
CONFIG_ENTRIES = frozenset({".npmrc", ".global-installrc", "etc"})


@dataclass(frozen=True)
class PackageSnapshot:
    """Structural view of one package slot in a namespace.

    Attributes:
        root_path: The package's directory under the module root
        bin_entries: Sorted command entries in the bin directory
        module_dir_entries: Sorted immediate children of root_path, or None
            when the package directory does not exist
        has_module_cache: Whether the bin directory contains node_modules
            (the win32 layout, where module_root lives inside bin_dir)
    """
    root_path: Path
    bin_entries: Tuple[str, ...] = ()
    module_dir_entries: Optional[Tuple[str, ...]] = None
    has_module_cache: bool = False

    @property
    def installed(self) -> bool:
        return self.module_dir_entries is not None

    @property
    def has_dependency_tree(self) -> bool:
        return MODULE_DIR_NAME in (self.module_dir_entries or ())


def _listdir(path: Path) -> Optional[Tuple[str, ...]]:
    try:
        return tuple(sorted(os.listdir(path)))
    except (FileNotFoundError, NotADirectoryError):
        return None


def bin_entries(ns: GlobalNamespace) -> Tuple[str, ...]:
    """Command entries in the bin directory (empty for a missing directory)."""
    entries = _listdir(ns.bin_dir) or ()
    return tuple(
        e for e in entries
        if e not in CONFIG_ENTRIES and e != MODULE_DIR_NAME and not e.startswith(".")
    )


def snapshot(ns: GlobalNamespace, package_name: str) -> PackageSnapshot:
    """Capture bin entries and the package's directory listing."""
    root = ns.package_dir(package_name)
    return PackageSnapshot(
        root_path=root,
        bin_entries=bin_entries(ns),
        module_dir_entries=_listdir(root),
        has_module_cache=(ns.bin_dir / MODULE_DIR_NAME).is_dir(),
    )


def command_owners(ns: GlobalNamespace) -> Dict[str, Optional[str]]:
    """Map every bin entry to the package it points into.

    None marks entries that point outside the module root, or into a
    package directory that no longer exists (dangling).
    """
    owners: Dict[str, Optional[str]] = {}
    for name in bin_entries(ns):
        target = entry_target(ns, ns.bin_dir / name)
        owner = owning_package(ns, target)
        if owner is not None and not target.exists():
            owner = None
        owners[name] = owner
    return owners
