"""Package archive utilities.

Provides deterministic packing of a project directory into a `.tgz` whose
members live under `package/`, safe unpacking of such archives, and the
manifest subset the installer relies on.
"""

from __future__ import annotations

import gzip
import io
import json
import logging
import os
import posixpath
import shutil
import stat
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from global_install.errors import ArchiveError
from global_install.hashing import integrity_file, sha1_file
from global_install.paths import validate_package_name


logger = logging.getLogger(__name__)

MANIFEST_NAME = "package.json"
ARCHIVE_PREFIX = "package"
PACK_IGNORE = {".git", ".svn", ".hg", "CVS", ".DS_Store", ".npmrc", ".global-installrc"}


@dataclass
class Manifest:
    """The parts of package.json used by the installer.

    Attributes:
        name: Package name (may be @scope/name)
        version: Exact version string
        bin: command name -> path relative to the package root
        finalize: hook declaration (string path or {"entry", "requires"})
        bundled: names under node_modules/ that ship inside the archive
        raw: the full parsed document
    """
    name: str
    version: str
    bin: Dict[str, str] = field(default_factory=dict)
    finalize: Optional[Union[str, Dict[str, Any]]] = None
    bundled: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return f"{self.name}@{self.version}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], package_dir: Optional[Path] = None) -> "Manifest":
        name = data.get("name")
        version = data.get("version")
        if not isinstance(name, str) or not name:
            raise ArchiveError("package.json is missing a 'name'")
        if not isinstance(version, str) or not version:
            raise ArchiveError(f"package.json for {name} is missing a 'version'")
        try:
            validate_package_name(name)
        except ValueError as e:
            raise ArchiveError(str(e)) from e

        return cls(
            name=name,
            version=version,
            bin=normalize_bin(name, data, package_dir),
            finalize=data.get("finalize"),
            bundled=_bundled_names(data, package_dir),
            raw=data,
        )


def _clean_bin_path(path: str) -> Optional[str]:
    """Normalize a bin target; None if it points outside the package."""
    if not isinstance(path, str) or not path.strip():
        return None
    cleaned = posixpath.normpath(path.replace("\\", "/").strip())
    if cleaned.startswith("/") or cleaned == ".." or cleaned.startswith("../"):
        return None
    return cleaned


def _clean_bin_name(name: str) -> Optional[str]:
    base = posixpath.basename(name.replace("\\", "/").strip())
    if not base or base in (".", ".."):
        return None
    return base


def normalize_bin(name: str, data: Dict[str, Any], package_dir: Optional[Path] = None) -> Dict[str, str]:
    """Normalize the `bin` field to a {command: relative_path} mapping.

    - string bin: the unscoped package name maps to it
    - mapping bin: entries with unsafe names or targets are dropped
    - directories.bin: every file in that directory (requires package_dir)
    """
    raw = data.get("bin")
    result: Dict[str, str] = {}

    if isinstance(raw, str):
        raw = {name.split("/")[-1]: raw}

    if isinstance(raw, dict):
        for cmd, target in raw.items():
            clean_cmd = _clean_bin_name(str(cmd))
            clean_target = _clean_bin_path(target)
            if clean_cmd and clean_target:
                result[clean_cmd] = clean_target
            else:
                logger.warning("%s: ignoring invalid bin entry %r -> %r", name, cmd, target)
        return dict(sorted(result.items()))

    bin_dir = (data.get("directories") or {}).get("bin")
    if bin_dir and package_dir is not None:
        clean_dir = _clean_bin_path(bin_dir)
        base = package_dir / clean_dir if clean_dir else None
        if base is not None and base.is_dir():
            for entry in sorted(base.iterdir()):
                if entry.is_file() and not entry.name.startswith("."):
                    result[entry.name] = f"{clean_dir}/{entry.name}"
    return result


def _bundled_names(data: Dict[str, Any], package_dir: Optional[Path]) -> List[str]:
    bundled = data.get("bundleDependencies", data.get("bundledDependencies"))
    if bundled is True:
        if package_dir is not None and (package_dir / "node_modules").is_dir():
            return sorted(_list_node_modules(package_dir / "node_modules"))
        return sorted((data.get("dependencies") or {}).keys())
    if isinstance(bundled, list):
        return sorted(str(b) for b in bundled)
    return []


def _list_node_modules(nm: Path) -> List[str]:
    names = []
    for entry in nm.iterdir():
        if entry.name.startswith("."):
            continue
        if entry.name.startswith("@") and entry.is_dir():
            names.extend(f"{entry.name}/{sub.name}" for sub in entry.iterdir() if sub.is_dir())
        elif entry.is_dir():
            names.append(entry.name)
    return names


def read_manifest(package_dir: Path) -> Manifest:
    """Load and validate package.json from a package directory."""
    manifest_path = package_dir / MANIFEST_NAME
    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ArchiveError(f"No {MANIFEST_NAME} in {package_dir}") from e
    except json.JSONDecodeError as e:
        raise ArchiveError(f"Invalid {MANIFEST_NAME} in {package_dir}: {e}") from e
    if not isinstance(data, dict):
        raise ArchiveError(f"Invalid {MANIFEST_NAME} in {package_dir}: not an object")
    return Manifest.from_dict(data, package_dir)


def read_installed_manifest(package_dir: Path) -> Optional[Manifest]:
    """Like read_manifest, but None when the directory or manifest is unusable."""
    try:
        return read_manifest(package_dir)
    except ArchiveError:
        return None


def tarball_name(name: str, version: str) -> str:
    """Archive filename for name@version (@scope/name -> scope-name-version.tgz)."""
    if name.startswith("@"):
        name = name[1:].replace("/", "-")
    return f"{name}-{version}.tgz"


def _deterministic_filter(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo:
    """Normalize TarInfo so repacking the same tree gives the same bytes."""
    executable = bool(tarinfo.mode & stat.S_IXUSR)
    tarinfo.mtime = 0
    tarinfo.uid = 0
    tarinfo.gid = 0
    tarinfo.uname = ""
    tarinfo.gname = ""
    tarinfo.mode = 0o755 if tarinfo.isdir() or executable else 0o644
    return tarinfo


def pack_files(project_dir: Path, manifest: Manifest) -> List[Path]:
    """Files (relative to project_dir) that go into the archive.

    node_modules is only included for bundled dependencies; VCS metadata,
    rc files and archives at the top level are never included.
    """
    bundled = set(manifest.bundled)
    selected: List[Path] = []

    for dirpath, dirnames, filenames in os.walk(project_dir):
        rel_dir = Path(dirpath).relative_to(project_dir)
        kept = []
        for d in sorted(dirnames):
            if d in PACK_IGNORE:
                continue
            if rel_dir == Path(".") and d == "node_modules" and not bundled:
                continue
            if rel_dir == Path("node_modules"):
                if d.startswith("."):
                    continue
                if not d.startswith("@") and d not in bundled:
                    continue
            if rel_dir.parent == Path("node_modules") and rel_dir.name.startswith("@"):
                if f"{rel_dir.name}/{d}" not in bundled:
                    continue
            kept.append(d)
        dirnames[:] = kept

        for f in sorted(filenames):
            if f in PACK_IGNORE:
                continue
            if rel_dir == Path(".") and f.endswith(".tgz"):
                continue
            selected.append(rel_dir / f)

    return sorted(selected, key=lambda p: p.as_posix())


def pack(project_dir: Path, dest_dir: Optional[Path] = None) -> Dict[str, Any]:
    """Create <name>-<version>.tgz from a project directory.

    Deterministic: sorted members, zeroed ownership and mtimes, gzip mtime 0.

    Returns:
        dict with name, version, filename, path, integrity, shasum, files
    """
    project_dir = project_dir.resolve()
    manifest = read_manifest(project_dir)
    dest_dir = (dest_dir or project_dir).resolve()
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / tarball_name(manifest.name, manifest.version)

    files = pack_files(project_dir, manifest)

    tar_buffer = io.BytesIO()
    with tarfile.open(fileobj=tar_buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for rel in files:
            tar.add(
                project_dir / rel,
                arcname=f"{ARCHIVE_PREFIX}/{rel.as_posix()}",
                recursive=False,
                filter=_deterministic_filter,
            )

    tmp = dest.with_name(dest.name + ".tmp")
    with open(tmp, "wb") as raw_f:
        with gzip.GzipFile(filename="", mode="wb", fileobj=raw_f, mtime=0) as gz:
            gz.write(tar_buffer.getvalue())
    os.replace(tmp, dest)

    logger.debug("packed %s (%d files) -> %s", manifest.id, len(files), dest)
    return {
        "name": manifest.name,
        "version": manifest.version,
        "filename": dest.name,
        "path": str(dest),
        "integrity": integrity_file(dest),
        "shasum": sha1_file(dest),
        "files": [rel.as_posix() for rel in files],
    }


def _member_path(member_name: str) -> Optional[str]:
    """Archive member name with the leading top-level directory stripped.

    Returns None for the top-level directory itself. Raises ArchiveError for
    absolute or escaping paths.
    """
    name = member_name.replace("\\", "/")
    if name.startswith("/") or (len(name) > 1 and name[1] == ":"):
        raise ArchiveError(f"Refusing absolute path in archive: {member_name}")
    parts = [p for p in name.split("/") if p not in ("", ".")]
    if ".." in parts:
        raise ArchiveError(f"Refusing path traversal in archive: {member_name}")
    if len(parts) <= 1:
        return None
    return "/".join(parts[1:])


def unpack(archive: Path, dest_dir: Path) -> List[Path]:
    """Extract a package archive into dest_dir, stripping `package/`.

    Only regular files and directories are extracted; other member types are
    skipped. dest_dir must not exist yet or be empty.

    Returns:
        List of extracted file paths
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    extracted: List[Path] = []
    try:
        with tarfile.open(archive, "r:*") as tar:
            for member in tar:
                rel = _member_path(member.name)
                if rel is None:
                    continue
                target = dest_dir / rel
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    logger.debug("skipping non-regular archive member %s", member.name)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                source = tar.extractfile(member)
                if source is None:
                    continue
                with source, open(target, "wb") as out:
                    shutil.copyfileobj(source, out)
                os.chmod(target, 0o755 if member.mode & 0o111 else 0o644)
                extracted.append(target)
    except (tarfile.TarError, EOFError, OSError, gzip.BadGzipFile) as e:
        raise ArchiveError(f"Could not read archive {archive}: {_one_line(e)}") from e
    return extracted


def _one_line(exc: BaseException) -> str:
    # tarfile joins the errors of each compression it tried with newlines
    return " ".join(str(exc).split())


def load_manifest_from_archive(archive: Path) -> Manifest:
    """Read package.json straight out of an archive without extracting it."""
    try:
        with tarfile.open(archive, "r:*") as tar:
            for member in tar:
                if member.isfile() and _member_path(member.name) == MANIFEST_NAME:
                    f = tar.extractfile(member)
                    if f is not None:
                        with f:
                            data = json.load(f)
                        if not isinstance(data, dict):
                            raise ArchiveError(f"Invalid {MANIFEST_NAME} in archive {archive}")
                        return Manifest.from_dict(data)
    except (tarfile.TarError, EOFError, OSError, json.JSONDecodeError) as e:
        raise ArchiveError(f"Could not load manifest from archive {archive}: {_one_line(e)}") from e
    raise ArchiveError(f"No {MANIFEST_NAME} in archive {archive}")
