#!/usr/bin/env python3
"""
test_cli.py - End-to-end tests through `python -m global_install`.

Tests:
1. pack + install --global, ls, which, verify, doctor
2. Finalization failure: `Error: <message>` on stderr, exit 1, bin still works
3. Self-replace: the installed command installs over its own package
4. Usage errors exit 2
"""
from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from conftest import PYTHON_SHEBANG, bin_script
from global_install.paths import GlobalNamespace
from global_install.resolve import resolve_command

REPO_ROOT = Path(__file__).resolve().parent.parent

LAZY_HOOK = "def finalize(context):\n    context.require('./LAZY_REQUIRE_CANARY')\n"

SELF_INSTALLER = PYTHON_SHEBANG + (
    "import sys\n"
    "from global_install.cli import main\n"
    "sys.exit(main())\n"
)


@pytest.fixture
def cli_env(tmp_path):
    env = {k: v for k, v in os.environ.items() if not k.startswith("GLOBAL_INSTALL_")}
    env["HOME"] = str(tmp_path / "home")
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT), env.get("PYTHONPATH")]))
    return env


@pytest.fixture
def prefix(tmp_path):
    return tmp_path / "prefix"


def run_cli(env, *args, cwd=None):
    return subprocess.run(
        [sys.executable, "-m", "global_install", *[str(a) for a in args]],
        env=env,
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=120,
    )


class TestInstallCommand:
    def test_pack_then_install(self, cli_env, prefix, make_project, tmp_path):
        project = make_project("npm", "999.999.999", bin={"npm": "bin/npm-cli.py"},
                               files={"bin/npm-cli.py": bin_script("hello from npm")})
        packed = run_cli(cli_env, "pack", project, "--pack-destination", tmp_path / "out", "--json")
        assert packed.returncode == 0, packed.stderr
        tarball = Path(json.loads(packed.stdout)["path"])
        assert tarball.name == "npm-999.999.999.tgz"

        result = run_cli(cli_env, "install", tarball, "--global", "--prefix", prefix)
        assert result.returncode == 0, result.stderr
        assert "+ npm@999.999.999" in result.stdout
        assert "[install] Swapped npm@999.999.999" in result.stderr

        ns = GlobalNamespace.from_prefix(prefix, "posix")
        out = subprocess.run([str(ns.bin_dir / "npm")], capture_output=True, text=True, timeout=60)
        assert out.stdout.strip() == "hello from npm"

        listed = run_cli(cli_env, "ls", "--global", "--prefix", prefix, "--json")
        assert json.loads(listed.stdout) == {"npm": "999.999.999"}

        verified = run_cli(cli_env, "verify", "npm", "--commands", "npm", "--expect-no-deps", "--prefix", prefix)
        assert verified.returncode == 0, verified.stdout
        assert "PASSED" in verified.stdout

        doctor = run_cli(cli_env, "doctor", "--prefix", prefix, "--json")
        assert doctor.returncode == 0, doctor.stdout
        assert json.loads(doctor.stdout)["success"]

    def test_which(self, cli_env, prefix, make_tarball):
        tarball = make_tarball("tool", "1.0.0", bin="cli.py", files={"cli.py": bin_script("tool")})
        assert run_cli(cli_env, "install", tarball, "-g", "--prefix", prefix).returncode == 0
        env = dict(cli_env, PATH=os.pathsep.join([str(prefix / "bin"), cli_env.get("PATH", "")]))
        found = run_cli(env, "which", "tool", "--json")
        assert found.returncode == 0, found.stderr
        assert json.loads(found.stdout)["resolved"].endswith(os.path.join("lib", "node_modules", "tool", "cli.py"))

        missing = run_cli(env, "which", "surely-not-a-command-xyz")
        assert missing.returncode == 1
        assert "Error: surely-not-a-command-xyz not found" in missing.stderr

    def test_uninstall(self, cli_env, prefix, make_tarball):
        tarball = make_tarball("tool", "1.0.0", bin="cli.py", files={"cli.py": bin_script("tool")})
        run_cli(cli_env, "install", tarball, "--global", "--prefix", prefix)
        result = run_cli(cli_env, "uninstall", "tool", "--global", "--prefix", prefix)
        assert result.returncode == 0, result.stderr
        assert "- tool" in result.stdout
        assert not (prefix / "bin" / "tool").exists()

    def test_install_failure_message(self, cli_env, prefix, tmp_path):
        bad = tmp_path / "bad.tgz"
        bad.write_bytes(b"not gzip")
        result = run_cli(cli_env, "install", bad, "--global", "--prefix", prefix)
        assert result.returncode == 1
        assert "Error: Could not read archive" in result.stderr
        assert len([l for l in result.stderr.splitlines() if l.startswith("Error:")]) == 1

    def test_requires_global(self, cli_env, prefix, tmp_path):
        result = run_cli(cli_env, "install", tmp_path / "x.tgz", "--prefix", prefix)
        assert result.returncode == 2
        assert "--global" in result.stderr


class TestFinalizationFailure:
    """A hook's lazy require of a missing module fails the install loudly."""

    def _broken(self, make_tarball, version="1.0.0"):
        return make_tarball(
            "npm", version,
            bin={"npm": "bin/npm-cli.py"},
            files={"bin/npm-cli.py": bin_script("This worked!"), "lib/cli/exit_handler.py": LAZY_HOOK},
            finalize="lib/cli/exit_handler.py",
        )

    def test_error_reported_and_bin_works(self, cli_env, prefix, make_tarball):
        broken = self._broken(make_tarball)
        result = run_cli(cli_env, "install", broken, "--global", "--prefix", prefix)
        assert result.returncode == 1
        assert "Error: Cannot find module './LAZY_REQUIRE_CANARY'" in result.stderr

        out = subprocess.run([str(prefix / "bin" / "npm")], capture_output=True, text=True, timeout=60)
        assert out.returncode == 0
        assert out.stdout.strip() == "This worked!"

        again = run_cli(cli_env, "install", broken, "--global", "--prefix", prefix)
        assert again.returncode == 1
        assert "Error: Cannot find module './LAZY_REQUIRE_CANARY'" in again.stderr

        fixed = make_tarball("npm", "1.0.1", bin={"npm": "bin/npm-cli.py"},
                             files={"bin/npm-cli.py": bin_script("This worked!")})
        recovered = run_cli(cli_env, "install", fixed, "--global", "--prefix", prefix)
        assert recovered.returncode == 0, recovered.stderr
        assert "Error:" not in recovered.stderr

    def test_hook_sys_exit(self, cli_env, prefix, make_tarball):
        hook = "import sys\n\ndef finalize(context):\n    sys.exit(1)\n"
        tarball = make_tarball("npm", "1.0.0", files={"hook.py": hook}, finalize="hook.py")
        result = run_cli(cli_env, "install", tarball, "--global", "--prefix", prefix)
        assert result.returncode == 1
        assert "Error: finalization hook exited with status 1" in result.stderr

    def test_no_finalize_flag(self, cli_env, prefix, make_tarball):
        result = run_cli(cli_env, "install", self._broken(make_tarball), "--global", "--prefix", prefix,
                         "--no-finalize")
        assert result.returncode == 0, result.stderr


class TestSelfReplace:
    """The installed command replaces its own package."""

    def test_self_replace_removes_own_commands(self, cli_env, prefix, make_tarball, tmp_path):
        first = make_tarball(
            "npm", "999.999.999",
            bin={"npm": "bin/npm-cli.py", "npx": "bin/npx-cli.py"},
            files={"bin/npm-cli.py": SELF_INSTALLER, "bin/npx-cli.py": bin_script("npx")},
        )
        assert run_cli(cli_env, "install", first, "--global", "--prefix", prefix).returncode == 0

        ambient = tmp_path / "ambient"
        ambient.mkdir()
        (ambient / "npm").write_text("#!/bin/sh\necho ambient\n")
        os.chmod(ambient / "npm", 0o755)
        ns = GlobalNamespace.from_prefix(prefix, "posix")
        search = [ns.bin_dir, ambient]
        assert str(resolve_command("npm", search, "posix")).startswith(str(ns.module_root.resolve()))

        no_bins = make_tarball("npm", "1000.0.0")
        result = subprocess.run(
            [str(ns.bin_dir / "npm"), "install", str(no_bins), "--global", "--prefix", str(prefix), "--json"],
            env=cli_env, capture_output=True, text=True, timeout=120,
        )
        assert result.returncode == 0, result.stderr
        [installed] = json.loads(result.stdout)
        assert installed["mode"] == "self-replace"
        assert installed["removed"] == ["npm", "npx"]

        assert resolve_command("npm", search, "posix") == (ambient / "npm").resolve()
        assert resolve_command("npx", search, "posix") is None
        assert os.listdir(ns.bin_dir) == []
