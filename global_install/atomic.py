"""
atomic.py - Build-aside-then-swap replacement of a package directory.

The new tree is fully materialized in a staging directory on the same
filesystem, then:
1. the old directory (if any) is renamed aside to a dotted trash name
2. the staged tree is renamed into place
3. the trash is deleted

If step 2 fails the trash is renamed back, so observers only ever see the
old tree or the new tree. A process still executing code it loaded from the
old tree is unaffected: on POSIX the renamed-aside files stay valid until
closed.

win32 refuses to rename a directory while something inside it is open.
Renames there are retried with back-off, and as a last resort the target is
replaced in place (remove, then copy the staged tree over).

Usage:
    swap = TreeSwap(staged_dir, ns.package_dir("npm"), platform=ns.platform)
    swap.commit()       # raises SwapError, namespace unchanged
    swap.finish()       # drop the old tree
"""

import errno
import logging
import os
import re
import shutil
import time
import uuid
from pathlib import Path
from typing import Callable, List, Optional

from global_install.errors import InstallFailure


logger = logging.getLogger(__name__)

TRASH_PREFIX = ".trash-"
# Uninstalled trees; never restored
REMOVED_PREFIX = ".removed-"
WIN32_RETRY_DELAYS = (0.05, 0.1, 0.2, 0.4, 0.8, 1.6)

_RETRYABLE = {errno.EACCES, errno.EPERM, errno.EBUSY, errno.ENOTEMPTY}


class SwapError(InstallFailure):
    """The staged tree could not be moved into place (namespace unchanged)."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__("swap", cause, message)


class RollbackError(InstallFailure):
    """Restoring the old tree failed (critical: namespace needs attention)."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__("swap", cause, message)


def _rename(src: Path, dst: Path, platform: str, sleep: Optional[Callable[[float], None]] = None) -> None:
    """os.rename with win32 sharing-violation retries."""
    sleep = sleep or time.sleep
    delays = WIN32_RETRY_DELAYS if platform == "win32" else ()
    for delay in delays:
        try:
            os.rename(src, dst)
            return
        except OSError as e:
            if e.errno not in _RETRYABLE and not isinstance(e, PermissionError):
                raise
            logger.debug("rename %s -> %s blocked (%s), retrying in %.2fs", src, dst, e, delay)
            sleep(delay)
    os.rename(src, dst)


def _remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


_TRASH_RE = re.compile(r"^\.(?:trash|removed)-(.+)-[0-9a-f]{8}$")


def trash_name(target: Path, prefix: str = TRASH_PREFIX) -> Path:
    return target.with_name(f"{prefix}{target.name}-{uuid.uuid4().hex[:8]}")


def trash_owner(trash: Path) -> Optional[Path]:
    """Directory a trash entry was moved aside from."""
    m = _TRASH_RE.match(trash.name)
    return trash.with_name(m.group(1)) if m else None


def sweep_trash(parent: Path, platform: str = "posix") -> List[Path]:
    """Clean up after swaps that did not finish.

    Swap trash whose original directory is missing is the only copy of the
    old tree (the swap was interrupted between its two renames): it is
    renamed back. All other trash is deleted. Trash that still cannot be
    removed (win32: in use) is left for next time.

    Returns:
        Trash entries that were deleted
    """
    removed = []
    if not parent.is_dir():
        return removed
    for entry in sorted(parent.iterdir()):
        if not entry.name.startswith((TRASH_PREFIX, REMOVED_PREFIX)):
            continue
        owner = trash_owner(entry)
        if entry.name.startswith(TRASH_PREFIX) and owner is not None and not owner.exists():
            _rename(entry, owner, platform)
            logger.warning("restored %s from interrupted swap %s", owner, entry.name)
            continue
        try:
            _remove_tree(entry)
            removed.append(entry)
        except OSError as e:
            logger.warning("could not remove old tree %s: %s", entry, e)
    return removed


def remove_aside(target: Path, platform: str = "posix") -> None:
    """Rename a directory to trash, then delete it.

    The rename is the commit point: once it succeeds the directory is gone
    from the namespace even if the delete leaves trash behind.
    """
    trash = trash_name(target, REMOVED_PREFIX)
    _rename(target, trash, platform)
    try:
        _remove_tree(trash)
    except OSError as e:
        logger.warning("could not remove old tree %s: %s", trash, e)


class TreeSwap:
    """One directory replacement.

    Attributes:
        staged: Fully materialized new tree (same filesystem as target)
        target: Directory to replace
        platform: "posix" or "win32"
        trash: Where the old tree was moved, once committed
    """

    def __init__(self, staged: Path, target: Path, platform: str = "posix"):
        self.staged = Path(staged)
        self.target = Path(target)
        self.platform = platform
        self.trash: Optional[Path] = None
        self.in_place = False
        self._committed = False

    def commit(self) -> None:
        """Move the staged tree into place. Raises SwapError on failure."""
        if self._committed:
            return
        self.target.parent.mkdir(parents=True, exist_ok=True)

        if self.target.exists() or self.target.is_symlink():
            trash = trash_name(self.target)
            try:
                _rename(self.target, trash, self.platform)
                self.trash = trash
            except OSError as e:
                if self.platform != "win32":
                    raise SwapError(f"Could not move {self.target} aside: {e}", e) from e
                self._replace_in_place(e)
                return

        try:
            _rename(self.staged, self.target, self.platform)
        except OSError as e:
            self._restore()
            raise SwapError(f"Could not move new tree into {self.target}: {e}", e) from e
        except BaseException:
            # Interrupted with the old tree aside: put it back before unwinding
            self._restore()
            raise

        self._committed = True
        logger.debug("swapped %s into %s", self.staged, self.target)

    def _replace_in_place(self, cause: OSError) -> None:
        """win32 fallback: empty the old directory and copy the new tree over it."""
        logger.warning("%s is in use (%s); replacing its contents in place", self.target, cause)
        try:
            for child in list(self.target.iterdir()):
                _remove_tree(child)
            shutil.copytree(self.staged, self.target, dirs_exist_ok=True, symlinks=True)
        except OSError as e:
            raise SwapError(f"Could not replace {self.target} in place: {e}", e) from e
        shutil.rmtree(self.staged, ignore_errors=True)
        self.in_place = True
        self._committed = True

    def _restore(self) -> None:
        if self.trash is None:
            return
        try:
            if self.target.exists():
                _remove_tree(self.target)
            _rename(self.trash, self.target, self.platform)
            self.trash = None
        except OSError as e:
            raise RollbackError(
                f"Could not restore {self.target} from {self.trash}: {e}", e
            ) from e

    def finish(self) -> None:
        """Delete the old tree. Failure only leaves trash for sweep_trash."""
        if self.trash is None:
            return
        try:
            _remove_tree(self.trash)
        except OSError as e:
            logger.warning("could not remove old tree %s: %s", self.trash, e)
        self.trash = None

    @property
    def committed(self) -> bool:
        return self._committed
