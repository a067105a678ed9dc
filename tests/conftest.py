"""Shared fixtures: throwaway namespaces and package projects."""
from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import pytest

from global_install.packages import pack
from global_install.paths import GlobalNamespace


# Bin scripts run with the interpreter running the tests (kernels cap shebang length)
PYTHON_SHEBANG = f"#!{sys.executable}\n" if len(sys.executable) < 120 and " " not in sys.executable else "#!/usr/bin/env python3\n"


@pytest.fixture
def namespace(tmp_path: Path) -> GlobalNamespace:
    """Empty POSIX-layout namespace under tmp_path/prefix."""
    return GlobalNamespace.from_prefix(tmp_path / "prefix", "posix")


@pytest.fixture
def win_namespace(tmp_path: Path) -> GlobalNamespace:
    """Empty win32-layout namespace (shim files, no symlinks needed)."""
    return GlobalNamespace.from_prefix(tmp_path / "winprefix", "win32")


def write_project(
    root: Path,
    name: str,
    version: str,
    bin: Optional[Any] = None,
    files: Optional[Dict[str, str]] = None,
    finalize: Optional[Any] = None,
    bundled: Optional[Dict[str, str]] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Path:
    """Create a package project directory.

    Args:
        bin: package.json `bin` value; string or mapping
        files: relative path -> content
        finalize: package.json `finalize` value
        bundled: dependency name -> version, written under node_modules/
            and listed in bundleDependencies
    """
    root.mkdir(parents=True, exist_ok=True)
    manifest: Dict[str, Any] = {"name": name, "version": version}
    if bin is not None:
        manifest["bin"] = bin
    if finalize is not None:
        manifest["finalize"] = finalize
    if bundled:
        manifest["dependencies"] = dict(bundled)
        manifest["bundleDependencies"] = sorted(bundled)
        for dep, dep_version in bundled.items():
            dep_dir = root / "node_modules" / dep
            dep_dir.mkdir(parents=True, exist_ok=True)
            (dep_dir / "package.json").write_text(json.dumps({"name": dep, "version": dep_version}))
            (dep_dir / "index.js").write_text("module.exports = 1\n")
    manifest.update(extra or {})
    (root / "package.json").write_text(json.dumps(manifest, indent=2))

    for rel, content in (files or {}).items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        if content.startswith("#!"):
            os.chmod(path, 0o755)
    return root


def bin_script(message: str) -> str:
    """Executable Python script printing `message`."""
    return PYTHON_SHEBANG + f"print({message!r})\n"


@pytest.fixture
def make_project(tmp_path: Path) -> Callable[..., Path]:
    """Factory: make_project(name, version, **kwargs) -> project dir."""
    counter = {"n": 0}

    def factory(name: str, version: str, **kwargs: Any) -> Path:
        counter["n"] += 1
        safe = name.replace("/", "-").lstrip("@")
        return write_project(tmp_path / "projects" / f"{safe}-{version}-{counter['n']}", name, version, **kwargs)

    return factory


@pytest.fixture
def make_tarball(tmp_path: Path, make_project: Callable[..., Path]) -> Callable[..., Path]:
    """Factory: make_tarball(name, version, **kwargs) -> packed .tgz path."""
    dest = tmp_path / "tarballs"

    def factory(name: str, version: str, **kwargs: Any) -> Path:
        project = make_project(name, version, **kwargs)
        out = dest / project.name
        return Path(pack(project, out)["path"])

    return factory
