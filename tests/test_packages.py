#!/usr/bin/env python3
"""
test_packages.py - Tests for archive packing, unpacking and manifests.

Tests:
1. Deterministic packing: same project produces identical bytes twice
2. Pack file selection (bundled node_modules only, ignored files)
3. Unpack strips package/ and refuses unsafe members
4. Manifest normalization (bin forms, validation)
"""
from __future__ import annotations

import io
import json
import tarfile
from pathlib import Path

import pytest

from global_install.errors import ArchiveError
from global_install.hashing import sha256_file
from global_install.packages import (
    Manifest,
    load_manifest_from_archive,
    normalize_bin,
    pack,
    read_installed_manifest,
    read_manifest,
    tarball_name,
    unpack,
)


def _tar_with(tmp_path: Path, members: dict) -> Path:
    archive = tmp_path / "crafted.tgz"
    with tarfile.open(archive, "w:gz") as tar:
        for name, content in members.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return archive


class TestDeterministicPacking:
    """Pack is deterministic."""

    def test_pack_same_project_twice_identical_hash(self, make_project, tmp_path):
        """Two packs of the same project produce identical archives."""
        project = make_project("det", "1.0.0", bin="cli.py", files={"cli.py": "#!/bin/sh\necho hi\n"})
        first = pack(project, tmp_path / "one")
        second = pack(project, tmp_path / "two")
        assert sha256_file(first["path"]) == sha256_file(second["path"])
        assert first["integrity"] == second["integrity"]

    def test_pack_names_tarball(self, make_project):
        project = make_project("@scope/tool", "2.0.0")
        result = pack(project)
        assert result["filename"] == "scope-tool-2.0.0.tgz"
        assert Path(result["path"]).parent == project.resolve()

    def test_tarball_name(self):
        assert tarball_name("npm", "10.0.0") == "npm-10.0.0.tgz"
        assert tarball_name("@s/n", "1.0.0") == "s-n-1.0.0.tgz"


class TestPackFileSelection:
    """Which files go into the archive."""

    def test_unbundled_node_modules_excluded(self, make_project):
        project = make_project("plain", "1.0.0", files={"index.js": "x"})
        (project / "node_modules" / "dep").mkdir(parents=True)
        (project / "node_modules" / "dep" / "index.js").write_text("y")
        result = pack(project)
        assert result["files"] == ["index.js", "package.json"]

    def test_bundled_node_modules_included(self, make_project):
        project = make_project("rich", "1.0.0", bundled={"dep": "1.0.0"})
        (project / "node_modules" / "other").mkdir(parents=True)
        (project / "node_modules" / "other" / "index.js").write_text("z")
        files = pack(project)["files"]
        assert "node_modules/dep/package.json" in files
        assert not any(f.startswith("node_modules/other") for f in files)

    def test_vcs_and_rc_files_excluded(self, make_project):
        project = make_project("clean", "1.0.0", files={".npmrc": "x=1", "a.txt": "a"})
        (project / ".git").mkdir()
        (project / ".git" / "HEAD").write_text("ref")
        (project / "old-0.1.0.tgz").write_bytes(b"junk")
        assert pack(project)["files"] == ["a.txt", "package.json"]

    def test_pack_without_manifest_fails(self, tmp_path):
        (tmp_path / "empty").mkdir()
        with pytest.raises(ArchiveError):
            pack(tmp_path / "empty")


class TestUnpack:
    """Unpack strips the top-level directory and refuses unsafe members."""

    def test_unpack_strips_package_prefix(self, make_tarball, tmp_path):
        archive = make_tarball("u", "1.0.0", files={"lib/a.js": "a"})
        dest = tmp_path / "out"
        unpack(archive, dest)
        assert (dest / "package.json").is_file()
        assert (dest / "lib" / "a.js").read_text() == "a"
        assert not (dest / "package").exists()

    def test_unpack_keeps_executable_bit(self, make_tarball, tmp_path):
        archive = make_tarball("x", "1.0.0", bin="run", files={"run": "#!/bin/sh\necho\n"})
        dest = tmp_path / "out"
        unpack(archive, dest)
        assert (dest / "run").stat().st_mode & 0o111

    def test_unpack_rejects_traversal(self, tmp_path):
        archive = _tar_with(tmp_path, {"package/package.json": "{}", "package/../../evil": "x"})
        with pytest.raises(ArchiveError, match="traversal"):
            unpack(archive, tmp_path / "out")
        assert not (tmp_path / "evil").exists()

    def test_unpack_rejects_absolute(self, tmp_path):
        archive = _tar_with(tmp_path, {"/etc/evil": "x"})
        with pytest.raises(ArchiveError, match="absolute"):
            unpack(archive, tmp_path / "out")

    def test_unpack_skips_symlinks(self, tmp_path):
        archive = tmp_path / "links.tgz"
        with tarfile.open(archive, "w:gz") as tar:
            data = b'{"name": "l", "version": "1.0.0"}'
            info = tarfile.TarInfo("package/package.json")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
            link = tarfile.TarInfo("package/escape")
            link.type = tarfile.SYMTYPE
            link.linkname = "/etc/passwd"
            tar.addfile(link)
        dest = tmp_path / "out"
        unpack(archive, dest)
        assert not (dest / "escape").exists()
        assert not (dest / "escape").is_symlink()

    def test_unpack_corrupt_archive(self, tmp_path):
        bad = tmp_path / "bad.tgz"
        bad.write_bytes(b"not a tarball")
        with pytest.raises(ArchiveError) as exc:
            unpack(bad, tmp_path / "out")
        assert str(exc.value).startswith("Could not read archive")
        assert "\n" not in str(exc.value)

    def test_load_manifest_from_archive(self, make_tarball):
        archive = make_tarball("m", "3.1.4", bin={"m": "m.py"}, files={"m.py": "x"})
        manifest = load_manifest_from_archive(archive)
        assert manifest.id == "m@3.1.4"
        assert manifest.bin == {"m": "m.py"}


class TestManifest:
    """Manifest normalization."""

    def test_string_bin_uses_unscoped_name(self):
        assert normalize_bin("@scope/tool", {"bin": "./cli.js"}) == {"tool": "cli.js"}

    def test_unsafe_bin_entries_dropped(self):
        data = {"bin": {"ok": "bin/ok", "escape": "../outside", "abs": "/usr/bin/x", "../bad": "bin/bad"}}
        result = normalize_bin("p", data)
        assert result == {"bad": "bin/bad", "ok": "bin/ok"}

    def test_directories_bin(self, tmp_path):
        (tmp_path / "scripts").mkdir()
        (tmp_path / "scripts" / "one").write_text("1")
        (tmp_path / "scripts" / "two").write_text("2")
        result = normalize_bin("p", {"directories": {"bin": "scripts"}}, tmp_path)
        assert result == {"one": "scripts/one", "two": "scripts/two"}

    def test_missing_version_rejected(self):
        with pytest.raises(ArchiveError, match="version"):
            Manifest.from_dict({"name": "p"})

    def test_invalid_name_rejected(self):
        with pytest.raises(ArchiveError):
            Manifest.from_dict({"name": "../p", "version": "1.0.0"})

    def test_read_manifest_errors(self, tmp_path):
        with pytest.raises(ArchiveError):
            read_manifest(tmp_path)
        (tmp_path / "package.json").write_text("[1, 2]")
        with pytest.raises(ArchiveError):
            read_manifest(tmp_path)
        assert read_installed_manifest(tmp_path) is None

    def test_bundled_true_lists_node_modules(self, tmp_path):
        (tmp_path / "node_modules" / "a").mkdir(parents=True)
        (tmp_path / "node_modules" / "@s" / "b").mkdir(parents=True)
        (tmp_path / "package.json").write_text(json.dumps(
            {"name": "p", "version": "1.0.0", "bundleDependencies": True}
        ))
        assert read_manifest(tmp_path).bundled == ["@s/b", "a"]
