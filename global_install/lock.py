"""Namespace-scoped mutual exclusion.

One writer per namespace: install, uninstall and repair all hold the lock
file under the namespace's state directory for their whole duration.
"""
from __future__ import annotations

import contextlib
import logging
from typing import Iterator

import filelock

from global_install.errors import NamespaceLocked
from global_install.paths import GlobalNamespace


logger = logging.getLogger(__name__)

LOCK_NAME = "namespace.lock"
DEFAULT_TIMEOUT = 60.0


def lock_for(ns: GlobalNamespace, timeout: float = DEFAULT_TIMEOUT) -> filelock.FileLock:
    """FileLock guarding `ns`. Creates the state directory if needed."""
    ns.state_dir.mkdir(parents=True, exist_ok=True)
    return filelock.FileLock(str(ns.state_dir / LOCK_NAME), timeout=timeout)


@contextlib.contextmanager
def namespace_lock(ns: GlobalNamespace, timeout: float = DEFAULT_TIMEOUT) -> Iterator[filelock.FileLock]:
    """Hold the namespace lock, raising NamespaceLocked on timeout."""
    lock = lock_for(ns, timeout)
    try:
        lock.acquire()
    except filelock.Timeout as e:
        raise NamespaceLocked(lock.lock_file, timeout) from e
    logger.debug("acquired %s", lock.lock_file)
    try:
        yield lock
    finally:
        lock.release()
        logger.debug("released %s", lock.lock_file)
