"""
registry.py - Minimal registry client.

Only what installs and publishes need:
    fetch_packument(name)                 GET  /<name>
    fetch_tarball(name, version, dest)    GET  <dist.tarball>
    publish(project_manifest, tarball)    PUT  /<name>

Version selection is exact-version or dist-tag only; ranges are not
supported. Tarballs are checked against dist.integrity (or dist.shasum), and
against registry signatures when signing keys are configured.

Authentication: bearer token from the config line
    //<host>/:_authToken = <token>
"""
from __future__ import annotations

import base64
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import load_der_public_key

from global_install.config import Config
from global_install.errors import (
    AuthRequired,
    IntegrityMismatch,
    PackageNotFound,
    RegistryError,
    SignatureVerificationFailed,
)
from global_install.hashing import check_integrity, integrity_file, sha1_file
from global_install.packages import Manifest, tarball_name


logger = logging.getLogger(__name__)

USER_AGENT = "global-install"
_RANGE_CHARS = re.compile(r"[\^~<>=*| ]|^[xX]$|\.[xX]")


def parse_spec(spec: str) -> Tuple[str, str]:
    """'name@selector' -> (name, selector); selector defaults to 'latest'."""
    spec = spec.strip()
    at = spec.find("@", 1)
    if at == -1:
        return spec, "latest"
    return spec[:at], spec[at + 1:] or "latest"


def escape_name(name: str) -> str:
    """URL path segment for a package name (@scope/name -> @scope%2fname)."""
    return quote(name, safe="@").replace("%2F", "%2f")


def pick_version(packument: Dict[str, Any], selector: str) -> Dict[str, Any]:
    """Version document for an exact version or a dist-tag."""
    name = packument.get("name", "?")
    versions = packument.get("versions") or {}
    if selector in versions:
        return versions[selector]
    tags = packument.get("dist-tags") or {}
    if selector in tags:
        version = tags[selector]
        if version in versions:
            return versions[version]
        raise PackageNotFound(f"dist-tag {selector} of {name} points at missing version {version}", 404)
    if _RANGE_CHARS.search(selector):
        raise PackageNotFound(f"Version ranges are not supported: {name}@{selector}")
    raise PackageNotFound(f"No matching version for {name}@{selector}", 404)


class RegistryClient:
    """HTTP client bound to one registry.

    Args:
        config: Effective configuration (registry URL, tokens, keys, retries)
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(self, config: Config, transport: Optional[httpx.BaseTransport] = None, timeout: float = 30.0):
        self.config = config
        self.registry = config.registry
        self._client = httpx.Client(
            transport=transport,
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _headers(self, url: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = dict(extra or {})
        token = self.config.token_for(url)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _check(self, response: httpx.Response, what: str) -> None:
        if response.status_code < 400:
            return
        try:
            detail = response.json().get("error") or response.text
        except (json.JSONDecodeError, AttributeError, ValueError):
            detail = response.text
        message = f"{response.status_code} {response.reason_phrase} - {response.request.method} {response.request.url}"
        if detail:
            message += f" - {detail}"
        if response.status_code == 404:
            raise PackageNotFound(f"{what} not found: {message}", 404)
        if response.status_code in (401, 403):
            raise AuthRequired(message, response.status_code)
        raise RegistryError(message, response.status_code)

    def _get(self, url: str, what: str, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        attempts = max(0, self.config.fetch_retries) + 1
        for attempt in range(attempts):
            try:
                response = self._client.get(url, headers=self._headers(url, headers))
            except httpx.TransportError as e:
                if attempt == attempts - 1:
                    raise RegistryError(f"Request to {url} failed: {e}") from e
                logger.info("GET %s failed (%s), retrying", url, e)
                continue
            if response.status_code >= 500 and attempt < attempts - 1:
                logger.info("GET %s returned %s, retrying", url, response.status_code)
                continue
            self._check(response, what)
            return response
        raise RegistryError(f"Request to {url} failed")

    def fetch_packument(self, name: str) -> Dict[str, Any]:
        url = self.registry + escape_name(name)
        response = self._get(url, name, {"Accept": "application/json"})
        try:
            return response.json()
        except ValueError as e:
            raise RegistryError(f"Invalid packument for {name}: {e}") from e

    def resolve(self, spec: str) -> Dict[str, Any]:
        """Version document for 'name@selector'."""
        name, selector = parse_spec(spec)
        return pick_version(self.fetch_packument(name), selector)

    def fetch_tarball(self, name: str, version: str, dest_dir: Path, version_doc: Optional[Dict[str, Any]] = None) -> Path:
        """Download and verify the tarball for name@version into dest_dir."""
        if version_doc is None:
            version_doc = pick_version(self.fetch_packument(name), version)
        dist = version_doc.get("dist") or {}
        url = dist.get("tarball")
        if not url:
            raise RegistryError(f"{name}@{version} has no dist.tarball")

        dest = Path(dest_dir) / tarball_name(name, version)
        dest.parent.mkdir(parents=True, exist_ok=True)
        response = self._get(url, f"{name}@{version} tarball")
        dest.write_bytes(response.content)

        self.verify_tarball(name, version, dist, dest)
        return dest

    def verify_tarball(self, name: str, version: str, dist: Dict[str, Any], path: Path) -> None:
        integrity = dist.get("integrity")
        if integrity:
            if not check_integrity(path, integrity):
                raise IntegrityMismatch(integrity, integrity_file(path))
        elif dist.get("shasum"):
            actual = sha1_file(path)
            if actual != dist["shasum"]:
                raise IntegrityMismatch(f"sha1 {dist['shasum']}", f"sha1 {actual}")
        else:
            logger.warning("%s@%s has no integrity data, not verified", name, version)

        if self.config.registry_keys:
            verify_signatures(name, version, dist, self.config.registry_keys)

    def publish(self, manifest: Manifest, tarball: Path, tag: str = "latest") -> Dict[str, Any]:
        """PUT a single-version packument with the tarball attached."""
        filename = tarball_name(manifest.name, manifest.version)
        url = self.registry + escape_name(manifest.name)
        data = tarball.read_bytes()
        integrity = integrity_file(tarball)
        version_doc = dict(manifest.raw)
        version_doc.update({
            "_id": manifest.id,
            "dist": {
                "integrity": integrity,
                "shasum": sha1_file(tarball),
                "tarball": f"{self.registry}{escape_name(manifest.name)}/-/{filename}",
            },
        })
        body = {
            "_id": manifest.name,
            "name": manifest.name,
            "description": manifest.raw.get("description", ""),
            "dist-tags": {tag: manifest.version},
            "versions": {manifest.version: version_doc},
            "access": None,
            "_attachments": {
                filename: {
                    "content_type": "application/octet-stream",
                    "data": base64.b64encode(data).decode("ascii"),
                    "length": len(data),
                }
            },
        }
        try:
            response = self._client.put(
                url,
                content=json.dumps(body),
                headers=self._headers(url, {"Content-Type": "application/json"}),
            )
        except httpx.TransportError as e:
            raise RegistryError(f"Publish to {url} failed: {e}") from e
        self._check(response, manifest.id)
        logger.info("published %s (%s)", manifest.id, integrity)
        return body


def verify_signatures(name: str, version: str, dist: Dict[str, Any], keys: List[Dict[str, str]]) -> None:
    """Check ECDSA P-256 registry signatures over '<name>@<version>:<integrity>'.

    Keys are {keyid, key} with `key` a base64 DER SubjectPublicKeyInfo.
    At least one signature must come from a configured key and all such
    signatures must verify.
    """
    signatures = dist.get("signatures") or []
    integrity = dist.get("integrity", "")
    message = f"{name}@{version}:{integrity}".encode("utf-8")
    by_id = {k["keyid"]: k["key"] for k in keys if "keyid" in k and "key" in k}

    checked = 0
    for sig in signatures:
        key_b64 = by_id.get(sig.get("keyid"))
        if key_b64 is None:
            continue
        try:
            public_key = load_der_public_key(base64.b64decode(key_b64))
            if not isinstance(public_key, ec.EllipticCurvePublicKey):
                raise SignatureVerificationFailed(f"Key {sig.get('keyid')} is not an ECDSA key")
            public_key.verify(base64.b64decode(sig.get("sig", "")), message, ec.ECDSA(hashes.SHA256()))
        except (InvalidSignature, ValueError) as e:
            raise SignatureVerificationFailed(
                f"{name}@{version} has an invalid registry signature from {sig.get('keyid')}"
            ) from e
        checked += 1

    if checked == 0:
        raise SignatureVerificationFailed(f"{name}@{version} has no signature from a trusted registry key")
