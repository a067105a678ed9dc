#!/usr/bin/env python3
"""
test_config.py - Tests for layered configuration.

Tests:
1. rc parsing (comments, quotes, ${ENV} expansion)
2. Precedence: defaults < YAML < rc < env < overrides
3. Token lookup by registry URL
"""
from __future__ import annotations

from pathlib import Path

import pytest

from global_install.config import DEFAULT_REGISTRY, Config, load_config, nerf_dart, parse_rc
from global_install.errors import ConfigError


class TestParseRc:
    def test_comments_quotes_and_env(self):
        text = """
        # comment
        ; also a comment
        registry = "https://r.example.com/"
        //r.example.com/:_authToken = ${TOKEN}
        offline
        """
        values = parse_rc(text, {"TOKEN": "s3cret"})
        assert values == {
            "registry": "https://r.example.com/",
            "//r.example.com/:_authToken": "s3cret",
            "offline": "true",
        }

    def test_missing_env_is_error(self):
        with pytest.raises(ConfigError, match="NOPE"):
            parse_rc("x = ${NOPE}", {})


def _env(tmp_path: Path, **extra: str) -> dict:
    env = {"HOME": str(tmp_path / "home")}
    env.update(extra)
    return env


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        config = load_config(env=_env(tmp_path, GLOBAL_INSTALL_PREFIX=str(tmp_path / "p")))
        assert config.prefix == (tmp_path / "p").absolute()
        assert config.registry == DEFAULT_REGISTRY
        assert config.lock_timeout == 60.0
        assert config.userconfig is None

    def test_precedence(self, tmp_path):
        prefix = tmp_path / "prefix"
        (prefix / "etc").mkdir(parents=True)
        (prefix / "etc" / "global-install.yaml").write_text(
            "registry: https://yaml.example.com\nlock_timeout: 5\nfetch_retries: 7\nloglevel: info\n"
        )
        home = tmp_path / "home"
        home.mkdir()
        (home / ".npmrc").write_text(f"prefix = {prefix}\nregistry = https://rc.example.com/\nlock-timeout = 9\n")

        env = _env(tmp_path, GLOBAL_INSTALL_LOCK_TIMEOUT="11")
        config = load_config(env=env)
        assert config.prefix == prefix.absolute()
        assert config.registry == "https://rc.example.com/"
        assert config.lock_timeout == 11.0
        assert config.fetch_retries == 7
        assert config.loglevel == "info"
        assert config.userconfig == home / ".npmrc"

        config = load_config({"registry": "https://cli.example.com"}, env=env)
        assert config.registry == "https://cli.example.com/"

    def test_global_installrc_preferred(self, tmp_path):
        home = tmp_path / "home"
        home.mkdir()
        (home / ".global-installrc").write_text("loglevel = debug\n")
        (home / ".npmrc").write_text("loglevel = error\n")
        config = load_config(env=_env(tmp_path, GLOBAL_INSTALL_PREFIX=str(tmp_path)))
        assert config.loglevel == "debug"

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "etc").mkdir()
        (tmp_path / "etc" / "global-install.yaml").write_text("registry: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config({"prefix": str(tmp_path)}, env=_env(tmp_path))

    def test_invalid_number(self, tmp_path):
        with pytest.raises(ConfigError, match="lock_timeout"):
            load_config({"prefix": str(tmp_path), "lock_timeout": "soon"}, env=_env(tmp_path))

    def test_namespace_from_prefix(self, tmp_path):
        config = load_config({"prefix": str(tmp_path), "platform": "posix"}, env=_env(tmp_path))
        assert config.namespace.bin_dir == tmp_path.absolute() / "bin"


class TestTokens:
    def test_nerf_dart(self):
        assert nerf_dart("https://registry.example.com:8443/a/b") == "//registry.example.com:8443/a/"
        assert nerf_dart("https://registry.example.com") == "//registry.example.com/"

    def test_longest_prefix_wins(self, tmp_path):
        config = Config(
            prefix=tmp_path,
            auth_tokens={"//r.example.com/": "root", "//r.example.com/team/": "team"},
        )
        assert config.token_for("https://r.example.com/pkg") == "root"
        assert config.token_for("https://r.example.com/team/pkg") == "team"
        assert config.token_for("https://other.example.com/pkg") is None

    def test_tokens_loaded_from_rc(self, tmp_path):
        rc = tmp_path / "rc"
        rc.write_text("//r.example.com/:_authToken = abc\n")
        config = load_config({"prefix": str(tmp_path)}, env=_env(tmp_path), userconfig=rc)
        assert config.auth_tokens == {"//r.example.com/": "abc"}
        assert config.token_for("https://r.example.com/some-pkg") == "abc"
