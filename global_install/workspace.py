"""
workspace.py - Staging area for one install.

The workspace lives in the namespace's state directory so that the staged
package tree is on the same filesystem as the module root and can be moved
into place with a rename. Whatever is left in it on exit (a tree that was
never swapped in, a downloaded tarball) is deleted, success or failure.

Usage:
    with StagingWorkspace(ns, "npm") as ws:
        archive = ws.path / "npm.tgz"
        unpack(archive, ws.tree)
        TreeSwap(ws.tree, ns.package_dir("npm")).commit()
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from global_install.paths import GlobalNamespace


logger = logging.getLogger(__name__)


class StagingWorkspace:
    """Ephemeral directory for fetching and unpacking one package.

    Attributes:
        path: Workspace root
        tree: Where the package tree is materialized (path / "package")
    """

    def __init__(self, ns: GlobalNamespace, package_hint: str = "pkg"):
        self.ns = ns
        self.package_hint = os.path.basename(package_hint.replace("\\", "/")) or "pkg"
        self.path: Optional[Path] = None

    @property
    def tree(self) -> Path:
        if self.path is None:
            raise RuntimeError("Workspace not initialized")
        return self.path / "package"

    def __enter__(self) -> "StagingWorkspace":
        self.ns.state_dir.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=f"staging-{self.package_hint}-", dir=self.ns.state_dir))
        logger.debug("workspace %s created", self.path)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            logger.debug("workspace %s abandoned: %s: %s", self.path, exc_type.__name__, exc_val)
        self._destroy()
        return False

    def _destroy(self) -> None:
        if self.path and self.path.exists():
            shutil.rmtree(self.path, ignore_errors=True)
            logger.debug("workspace %s destroyed", self.path)
        self.path = None


def sweep_stale_workspaces(ns: GlobalNamespace) -> List[Path]:
    """Remove staging directories left by interrupted processes.

    Only call while holding the namespace lock: a live install's workspace
    looks exactly like a stale one.
    """
    removed = []
    if not ns.state_dir.is_dir():
        return removed
    for entry in ns.state_dir.glob("staging-*"):
        if entry.is_dir():
            shutil.rmtree(entry, ignore_errors=True)
            removed.append(entry)
    return removed
