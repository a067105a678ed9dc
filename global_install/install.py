"""
install.py - Apply an install to a global namespace.

Workflow (each step named for InstallFailure.step):
1. lock      - take the namespace lock; finish any interrupted relinks
2. fetch     - archive path as-is, or registry spec -> verified tarball
3. unpack    - extract into a staging workspace next to the module root
4. swap      - move the staged tree over the package directory (TreeSwap)
5. link      - remove commands the old version had and the new one lacks,
               then write entries for every command the new version declares
6. finalize  - run the package's finalization hook (after all mutation)

Journal events: INSTALL_STARTED -> TREE_SWAPPED -> LINKED ->
FINALIZED | FINALIZE_FAILED, or INSTALL_FAILED.

Failures in steps 1-4 leave the namespace exactly as it was. A failure (or
crash) between 4 and 5 leaves the new tree with stale links; the journal
records TREE_SWAPPED and the next operation on the namespace relinks.
A finalization failure does not undo anything: the package IS installed,
and InstallResult.finalization says the hook failed.
"""
from __future__ import annotations

import enum
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from global_install import bin_links
from global_install.atomic import TreeSwap, remove_aside, sweep_trash
from global_install.errors import ArchiveError, InstallFailure, RegistryError
from global_install.finalize import FinalizationOutcome, run_finalization
from global_install.hashing import integrity_file
from global_install.journal import (
    FINALIZE_FAILED,
    FINALIZED,
    INSTALL_FAILED,
    INSTALL_STARTED,
    LINKED,
    REPAIRED,
    TREE_SWAPPED,
    UNINSTALLED,
    Journal,
)
from global_install.lock import DEFAULT_TIMEOUT, namespace_lock
from global_install.packages import Manifest, read_installed_manifest, read_manifest, unpack
from global_install.paths import GlobalNamespace, is_inside
from global_install.registry import RegistryClient, parse_spec
from global_install.snapshot import PackageSnapshot, snapshot
from global_install.workspace import StagingWorkspace, sweep_stale_workspaces


logger = logging.getLogger(__name__)

Reporter = Callable[[str], None]


class InstallMode(str, enum.Enum):
    FRESH = "fresh"
    SELF_REPLACE = "self-replace"


@dataclass(frozen=True)
class InstallOperation:
    """One install request. Consumed once by apply()."""
    source: str
    target: GlobalNamespace
    mode: InstallMode = InstallMode.FRESH
    force: bool = False


@dataclass
class InstallResult:
    """What apply() did."""
    name: str
    version: str
    package_dir: Path
    mode: InstallMode
    integrity: str
    linked: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    before: Optional[PackageSnapshot] = None
    after: Optional[PackageSnapshot] = None
    finalization: FinalizationOutcome = field(default_factory=FinalizationOutcome.ok)

    @property
    def id(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def succeeded(self) -> bool:
        return self.finalization.succeeded

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "version": self.version,
            "path": str(self.package_dir),
            "mode": self.mode.value,
            "integrity": self.integrity,
            "linked": self.linked,
            "removed": self.removed,
            "finalized": self.finalization.succeeded,
            "error": str(self.finalization.error) if self.finalization.error else None,
        }


def running_executable() -> Path:
    """Real path of the script this process was started from."""
    argv0 = sys.argv[0] if sys.argv and sys.argv[0] else sys.executable
    return Path(os.path.realpath(argv0))


def detect_mode(ns: GlobalNamespace, package_name: str, executable: Optional[Path] = None) -> InstallMode:
    """SELF_REPLACE when the running executable lives in the target package dir."""
    executable = executable or running_executable()
    package_dir = ns.package_dir(package_name)
    real_dir = Path(os.path.realpath(package_dir))
    if is_inside(executable, package_dir) or is_inside(executable, real_dir):
        return InstallMode.SELF_REPLACE
    return InstallMode.FRESH


def _noop(message: str) -> None:
    pass


def _is_archive(source: str) -> bool:
    """Paths and archive names are archives; `name`, `@scope/name@tag` are registry specs."""
    if source.endswith((".tgz", ".tar.gz", ".tar")) or Path(source).is_file():
        return True
    if source.startswith("@"):
        return False
    return source.startswith((".", "~")) or os.path.isabs(source) or "/" in source or os.path.sep in source


def _fetch(
    source: str,
    ws: StagingWorkspace,
    registry: Optional[RegistryClient],
) -> Path:
    if _is_archive(source):
        archive = Path(source).expanduser().resolve()
        if not archive.is_file():
            raise ArchiveError(f"Archive not found: {archive}", step="fetch")
        return archive
    if registry is None:
        raise InstallFailure("fetch", message=f"No registry configured to fetch {source}")
    name, _ = parse_spec(source)
    version_doc = registry.resolve(source)
    if version_doc.get("name", name) != name:
        raise ArchiveError(f"Registry returned {version_doc.get('name')} for {source}", step="fetch")
    return registry.fetch_tarball(name, version_doc["version"], ws.path, version_doc)


def _relink(ns: GlobalNamespace, journal: Journal, name: str, report: Reporter) -> None:
    package_dir = ns.package_dir(name)
    manifest = read_installed_manifest(package_dir)
    stale = bin_links.commands_owned_by(ns, name)
    declared = list(manifest.bin) if manifest else []
    removed = bin_links.unlink_commands(ns, [c for c in stale if c not in declared], name)
    linked = bin_links.link_bins(ns, manifest, package_dir) if manifest else []
    removed += bin_links.unlink_commands(ns, [c for c in declared if c not in linked], name)
    journal.write(
        REPAIRED, name, manifest.version if manifest else None,
        linked=linked, removed=removed,
    )
    report(f"Relinked {name} after an interrupted install")


def repair(
    ns: GlobalNamespace,
    only: Optional[str] = None,
    report: Reporter = _noop,
    lock_timeout: float = DEFAULT_TIMEOUT,
    _locked: bool = False,
) -> List[str]:
    """Finish relinks that an interrupted install left behind.

    Args:
        ns: Namespace to repair
        only: Restrict to one package name
        _locked: Caller already holds the namespace lock

    Returns:
        Names of packages that were relinked
    """
    if not _locked:
        with namespace_lock(ns, lock_timeout):
            return repair(ns, only, report, lock_timeout, _locked=True)

    journal = Journal(ns)
    repaired = []
    for name in journal.pending_relinks():
        if only is not None and name != only:
            continue
        _relink(ns, journal, name, report)
        repaired.append(name)
    sweep_stale_workspaces(ns)
    sweep_trash(ns.module_root, ns.platform)
    if ns.module_root.is_dir():
        for scope in ns.module_root.glob("@*"):
            sweep_trash(scope, ns.platform)
    return repaired


def apply(
    operation: InstallOperation,
    registry: Optional[RegistryClient] = None,
    run_finalization_hook: bool = True,
    report: Reporter = _noop,
    lock_timeout: float = DEFAULT_TIMEOUT,
) -> InstallResult:
    """Install operation.source into operation.target.

    Raises:
        InstallFailure: fetch/unpack/swap/link failed (step in .step)
    """
    ns = operation.target
    with namespace_lock(ns, lock_timeout):
        return _apply_locked(operation, Journal(ns), registry, run_finalization_hook, report, lock_timeout)


def _apply_locked(
    operation: InstallOperation,
    journal: Journal,
    registry: Optional[RegistryClient],
    run_finalization_hook: bool,
    report: Reporter,
    lock_timeout: float,
) -> InstallResult:
    ns = operation.target
    repair(ns, report=report, lock_timeout=lock_timeout, _locked=True)

    step = "fetch"
    swapped = False
    manifest: Optional[Manifest] = None
    with StagingWorkspace(ns, operation.source) as ws:
        report(f"Workspace: {ws.path}")
        try:
            archive = _fetch(operation.source, ws, registry)
            integrity = integrity_file(archive)

            step = "unpack"
            unpack(archive, ws.tree)
            manifest = read_manifest(ws.tree)
            if not _is_archive(operation.source):
                expected, _ = parse_spec(operation.source)
                if expected != manifest.name:
                    raise ArchiveError(f"Tarball for {expected} contains {manifest.name}")
            report(f"Unpacked {manifest.id}")

            package_dir = ns.package_dir(manifest.name)
            mode = operation.mode
            if mode == InstallMode.FRESH and detect_mode(ns, manifest.name) == InstallMode.SELF_REPLACE:
                mode = InstallMode.SELF_REPLACE

            before = snapshot(ns, manifest.name)
            old_commands = set(bin_links.commands_owned_by(ns, manifest.name))
            old_manifest = read_installed_manifest(package_dir)
            if old_manifest is not None:
                old_commands.update(old_manifest.bin)

            bin_links.check_conflicts(ns, manifest, force=operation.force)

            journal.write(INSTALL_STARTED, manifest.name, manifest.version,
                          source=operation.source, mode=mode.value, integrity=integrity)

            step = "swap"
            swap = TreeSwap(ws.tree, package_dir, platform=ns.platform)
            swap.commit()
            journal.write(TREE_SWAPPED, manifest.name, manifest.version)
            swapped = True
            swap.finish()
            report(f"Swapped {manifest.id} into {package_dir}")

            step = "link"
            stale = sorted(old_commands - set(manifest.bin))
            removed = bin_links.unlink_commands(ns, stale, manifest.name)
            linked = bin_links.link_bins(ns, manifest, package_dir)
            # Declared but not linked (target missing): drop the old version's entry
            removed += bin_links.unlink_commands(ns, [c for c in manifest.bin if c not in linked], manifest.name)
            journal.write(LINKED, manifest.name, manifest.version, linked=linked, removed=removed)
            report(f"Linked {', '.join(linked) if linked else 'no commands'}")
        except InstallFailure as e:
            _journal_failure(journal, manifest, operation, e.step, e, swapped)
            raise
        except RegistryError as e:
            _journal_failure(journal, manifest, operation, step, e, swapped)
            raise
        except (OSError, ValueError) as e:
            _journal_failure(journal, manifest, operation, step, e, swapped)
            raise InstallFailure(step, e) from e

    result = InstallResult(
        name=manifest.name,
        version=manifest.version,
        package_dir=package_dir,
        mode=mode,
        integrity=integrity,
        linked=linked,
        removed=removed,
        before=before,
        after=snapshot(ns, manifest.name),
    )

    if run_finalization_hook:
        outcome = run_finalization(package_dir)
        result.finalization = outcome
        if outcome.succeeded:
            journal.write(FINALIZED, manifest.name, manifest.version)
        else:
            journal.write(FINALIZE_FAILED, manifest.name, manifest.version,
                          error=str(outcome.error)[:500], step=outcome.error.step)
            logger.info("finalization of %s failed: %s", manifest.id, outcome.error)
    return result


def _journal_failure(
    journal: Journal,
    manifest: Optional[Manifest],
    operation: InstallOperation,
    step: str,
    error: BaseException,
    swapped: bool = False,
) -> None:
    name = manifest.name if manifest else operation.source
    version = manifest.version if manifest else None
    # Swap committed but link failed: keep TREE_SWAPPED as the last event so
    # the next operation relinks
    if swapped:
        return
    journal.write(INSTALL_FAILED, name, version, step=step, error=str(error)[:500])


def uninstall(
    ns: GlobalNamespace,
    name: str,
    report: Reporter = _noop,
    lock_timeout: float = DEFAULT_TIMEOUT,
) -> List[str]:
    """Remove a package's commands, then its directory.

    Returns:
        Commands that were removed
    """
    with namespace_lock(ns, lock_timeout):
        package_dir = ns.package_dir(name)
        if not package_dir.exists():
            raise InstallFailure("uninstall", message=f"{name} is not installed in {ns.prefix}")
        journal = Journal(ns)
        manifest = read_installed_manifest(package_dir)
        commands = set(bin_links.commands_owned_by(ns, name))
        if manifest is not None:
            commands.update(manifest.bin)
        removed = bin_links.unlink_commands(ns, sorted(commands), name)

        try:
            remove_aside(package_dir, ns.platform)
        except OSError as e:
            raise InstallFailure("uninstall", e) from e

        scope_dir = package_dir.parent
        if scope_dir != ns.module_root and scope_dir.is_dir() and not any(scope_dir.iterdir()):
            scope_dir.rmdir()

        journal.write(UNINSTALLED, name, manifest.version if manifest else None, removed=removed)
        report(f"Removed {name} ({len(removed)} commands)")
        return removed


def list_installed(ns: GlobalNamespace) -> Dict[str, Optional[str]]:
    """name -> version for every package directory in the module root."""
    installed: Dict[str, Optional[str]] = {}
    if not ns.module_root.is_dir():
        return installed
    for entry in sorted(ns.module_root.iterdir()):
        if entry.name.startswith(".") or not entry.is_dir():
            continue
        if entry.name.startswith("@"):
            for sub in sorted(entry.iterdir()):
                if sub.is_dir() and not sub.name.startswith("."):
                    manifest = read_installed_manifest(sub)
                    installed[f"{entry.name}/{sub.name}"] = manifest.version if manifest else None
            continue
        manifest = read_installed_manifest(entry)
        installed[entry.name] = manifest.version if manifest else None
    return installed
