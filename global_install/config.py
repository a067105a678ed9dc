"""
config.py - Layered configuration.

Sources, lowest to highest precedence:
1. Built-in defaults
2. Global settings: <prefix>/etc/global-install.yaml (YAML mapping)
3. User rc file: key = value lines (default ~/.global-installrc, then ~/.npmrc)
4. GLOBAL_INSTALL_* environment variables
5. Explicit overrides (CLI flags)

rc file format:
    # comment          ; comment
    registry = https://registry.example.com/
    prefix = ~/.local
    //registry.example.com/:_authToken = ${REGISTRY_TOKEN}

Environment:
    GLOBAL_INSTALL_PREFIX, GLOBAL_INSTALL_REGISTRY, GLOBAL_INSTALL_USERCONFIG,
    GLOBAL_INSTALL_LOGLEVEL, GLOBAL_INSTALL_LOCK_TIMEOUT
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlsplit

import yaml

from global_install.errors import ConfigError
from global_install.paths import GlobalNamespace, default_prefix


DEFAULT_REGISTRY = "https://registry.npmjs.org/"
GLOBAL_CONFIG_NAME = "global-install.yaml"
USERCONFIG_NAMES = (".global-installrc", ".npmrc")
ENV_PREFIX = "GLOBAL_INSTALL_"

_ENV_REF_RE = re.compile(r"\$\{([^}]+)\}")


@dataclass
class Config:
    """Effective settings for one invocation."""
    prefix: Path
    registry: str = DEFAULT_REGISTRY
    auth_tokens: Dict[str, str] = field(default_factory=dict)
    lock_timeout: float = 60.0
    fetch_retries: int = 2
    loglevel: str = "warning"
    registry_keys: List[Dict[str, str]] = field(default_factory=list)
    userconfig: Optional[Path] = None
    platform: Optional[str] = None

    @property
    def namespace(self) -> GlobalNamespace:
        return GlobalNamespace.from_prefix(self.prefix, self.platform)

    def token_for(self, url: str) -> Optional[str]:
        """Auth token whose nerf-dart key is the longest prefix of `url`."""
        target = nerf_dart(url)
        best: Optional[str] = None
        best_len = -1
        for key, token in self.auth_tokens.items():
            if target.startswith(key) and len(key) > best_len:
                best, best_len = token, len(key)
        return best


def nerf_dart(url: str) -> str:
    """'https://host:1234/a/b' -> '//host:1234/a/' (scheme dropped, dir path kept)."""
    parts = urlsplit(url)
    path = (parts.path or "/").rsplit("/", 1)[0] + "/"
    return f"//{parts.netloc}{path}"


def _expand(value: str, env: Mapping[str, str]) -> str:
    def sub(m: re.Match) -> str:
        name = m.group(1)
        if name not in env:
            raise ConfigError(f"Failed to replace env in config: ${{{name}}}")
        return env[name]
    return _ENV_REF_RE.sub(sub, value)


def parse_rc(text: str, env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Parse `key = value` rc text; values may reference ${ENV} variables."""
    env = os.environ if env is None else env
    result: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", ";")):
            continue
        if "=" not in line:
            result[line] = "true"
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        result[_expand(key.strip(), env)] = _expand(value, env)
    return result


def load_global_settings(prefix: Path) -> Dict[str, Any]:
    """Read <prefix>/etc/global-install.yaml, {} when absent."""
    path = prefix / "etc" / GLOBAL_CONFIG_NAME
    if not path.is_file():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


def find_userconfig(env: Mapping[str, str], explicit: Optional[Path] = None) -> Optional[Path]:
    if explicit is not None:
        return Path(explicit).expanduser()
    if env.get(ENV_PREFIX + "USERCONFIG"):
        return Path(env[ENV_PREFIX + "USERCONFIG"]).expanduser()
    home = Path(env.get("HOME") or env.get("USERPROFILE") or Path.home())
    for name in USERCONFIG_NAMES:
        candidate = home / name
        if candidate.is_file():
            return candidate
    return None


def _apply(settings: Dict[str, Any], values: Mapping[str, Any]) -> None:
    for key, value in values.items():
        if value is None:
            continue
        norm = str(key).replace("-", "_").lower()
        if str(key).startswith("//"):
            if str(key).endswith(":_authToken"):
                settings["auth_tokens"][str(key)[: -len(":_authToken")]] = str(value)
            continue
        if norm == "auth_tokens" and isinstance(value, dict):
            settings["auth_tokens"].update({str(k): str(v) for k, v in value.items()})
        elif norm in ("registry", "loglevel", "platform"):
            settings[norm] = str(value)
        elif norm == "prefix":
            settings["prefix"] = Path(str(value)).expanduser()
        elif norm == "lock_timeout":
            settings["lock_timeout"] = _number(key, value, float)
        elif norm == "fetch_retries":
            settings["fetch_retries"] = _number(key, value, int)
        elif norm == "registry_keys":
            if not isinstance(value, list):
                raise ConfigError("registry_keys must be a list of {keyid, key} mappings")
            settings["registry_keys"] = [dict(k) for k in value]


def _number(key: Any, value: Any, kind: type) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from e


def load_config(
    overrides: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
    userconfig: Optional[Path] = None,
) -> Config:
    """Merge every configuration source into a Config."""
    env = os.environ if env is None else env
    overrides = dict(overrides or {})

    settings: Dict[str, Any] = {"auth_tokens": {}}

    rc_path = find_userconfig(env, userconfig)
    rc_values: Dict[str, str] = {}
    if rc_path is not None and rc_path.is_file():
        rc_values = parse_rc(rc_path.read_text(encoding="utf-8"), env)

    env_values = {
        k[len(ENV_PREFIX):].lower(): v
        for k, v in env.items()
        if k.startswith(ENV_PREFIX) and k != ENV_PREFIX + "USERCONFIG"
    }

    # The prefix decides where the global settings file lives
    prefix_sources: Dict[str, Any] = {}
    for layer in (rc_values, env_values, overrides):
        if layer.get("prefix"):
            prefix_sources["prefix"] = layer["prefix"]
    prefix = Path(str(prefix_sources["prefix"])).expanduser() if prefix_sources else default_prefix()

    global_settings = load_global_settings(prefix)
    global_settings.pop("prefix", None)
    _apply(settings, global_settings)
    _apply(settings, rc_values)
    _apply(settings, env_values)
    _apply(settings, overrides)
    settings["prefix"] = Path(settings.get("prefix", prefix)).expanduser().absolute()

    registry = settings.get("registry", DEFAULT_REGISTRY)
    if not registry.endswith("/"):
        registry += "/"
    settings["registry"] = registry

    return Config(userconfig=rc_path, **settings)
