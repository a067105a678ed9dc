"""
errors.py - Exception hierarchy for global installs.

Categories:
    InstallFailure      - the namespace was NOT changed (or was rolled back)
    FinalizationError   - files are in place, the package's hook raised
    HookModuleNotFound  - deferred load inside a hook found nothing
    RegistryError       - transport/registry level failures

Resolution absence is never an exception; resolvers return None.
"""
from __future__ import annotations

from typing import Optional


class GlobalInstallError(Exception):
    """Base class for every error raised by global_install."""
    pass


class ConfigError(GlobalInstallError):
    """Configuration file or value is invalid."""
    pass


class InstallFailure(GlobalInstallError):
    """An install step failed before the operation completed.

    Attributes:
        step: Name of the failing step (lock, fetch, unpack, swap, link)
        cause: Underlying exception, if any
    """

    def __init__(self, step: str, cause: Optional[BaseException] = None, message: str = ""):
        self.step = step
        self.cause = cause
        super().__init__(message or (str(cause) if cause is not None else f"{step} failed"))


class ArchiveError(InstallFailure):
    """Archive is unreadable, unsafe, or has no usable manifest."""

    def __init__(self, message: str, step: str = "unpack"):
        super().__init__(step, message=message)


class IntegrityMismatch(InstallFailure):
    """Downloaded tarball does not match the registry's digest."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            "fetch",
            message=f"Integrity check failed: wanted {expected} but got {actual}",
        )


class LinkConflict(InstallFailure):
    """A bin entry is owned by a different package."""

    def __init__(self, command: str, owner: str):
        self.command = command
        self.owner = owner
        super().__init__(
            "link",
            message=f"Command '{command}' is already provided by {owner} (use --force to overwrite)",
        )


class NamespaceLocked(InstallFailure):
    """Another operation holds the namespace lock."""

    def __init__(self, lock_path: str, timeout: float):
        self.lock_path = lock_path
        super().__init__(
            "lock",
            message=f"Timed out after {timeout}s waiting for {lock_path}",
        )


class FinalizationError(GlobalInstallError):
    """A package's finalization hook failed after its files were installed.

    str() is the hook's original error message, unwrapped.
    """

    def __init__(self, message: str, step: str = "run", cause: Optional[BaseException] = None):
        self.message = message
        self.step = step
        self.cause = cause
        super().__init__(message)


class HookModuleNotFound(ModuleNotFoundError):
    """Raised by HookContext.require when the requested module is missing."""

    def __init__(self, spec: str):
        self.spec = spec
        super().__init__(f"Cannot find module '{spec}'", name=spec)


class RegistryError(GlobalInstallError):
    """Registry responded with an error."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class PackageNotFound(RegistryError):
    """Package, version, or dist-tag does not exist."""
    pass


class AuthRequired(RegistryError):
    """Registry rejected the request for lack of credentials."""
    pass


class SignatureVerificationFailed(RegistryError):
    """Registry signature over a tarball's integrity did not verify."""
    pass
