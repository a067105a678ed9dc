"""
finalize.py - Run an installed package's finalization hook.

A package opts in with a `finalize` field in package.json:

    "finalize": "lib/cli/exit_handler.py"

or, declaring the modules the hook will load on demand so a missing one is
reported before the hook runs:

    "finalize": {"entry": "lib/cli/exit_handler.py", "requires": ["./messages"]}

The entry file must define `finalize(context)`. It may return an awaitable,
which is run to completion. `context.require("./name")` loads `name.py` (or
`name/__init__.py`) relative to the entry file at call time; a missing module
raises HookModuleNotFound("Cannot find module './name'").

The hook runs strictly after the tree swap and link rewrite. Whatever it
raises is captured unchanged in FinalizationOutcome.error; nothing is
swallowed.
"""
from __future__ import annotations

import asyncio
import importlib.util
import inspect
import logging
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, Optional

from global_install.errors import FinalizationError, HookModuleNotFound
from global_install.packages import Manifest, read_installed_manifest
from global_install.paths import is_inside


logger = logging.getLogger(__name__)

HOOK_FUNCTION = "finalize"


@dataclass(frozen=True)
class FinalizationOutcome:
    """Result of one finalization attempt."""
    succeeded: bool
    error: Optional[FinalizationError] = None
    entry: Optional[Path] = None

    @classmethod
    def ok(cls, entry: Optional[Path] = None) -> "FinalizationOutcome":
        return cls(True, None, entry)

    @classmethod
    def failed(cls, error: FinalizationError, entry: Optional[Path] = None) -> "FinalizationOutcome":
        return cls(False, error, entry)


def _load_module(path: Path, label: str) -> ModuleType:
    """Execute a Python file as a fresh module. Never cached in sys.modules."""
    name = f"_global_install_hook_{uuid.uuid4().hex}"
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise HookModuleNotFound(label)
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    finally:
        sys.modules.pop(name, None)
    return module


def _module_file(base_dir: Path, spec: str) -> Optional[Path]:
    rel = spec[2:] if spec.startswith("./") else spec
    candidate = (base_dir / rel)
    for path in (candidate, candidate.with_name(candidate.name + ".py"), candidate / "__init__.py"):
        if path.is_file():
            return path
    return None


@dataclass
class HookContext:
    """What a finalization hook is given.

    Attributes:
        package_dir: Installed package directory
        manifest: Installed package manifest
        base_dir: Directory `require` resolves relative specs against
    """
    package_dir: Path
    manifest: Optional[Manifest]
    base_dir: Path
    _loaded: Dict[Path, ModuleType] = field(default_factory=dict)

    def resolve(self, spec: str) -> Optional[Path]:
        """File a `require(spec)` would load, or None. Never leaves package_dir."""
        if not spec.startswith(("./", "../")):
            spec = "./" + spec
        path = _module_file(self.base_dir, spec)
        if path is None or not is_inside(path, self.package_dir):
            return None
        return path

    def require(self, spec: str) -> ModuleType:
        """Load a module of the installed package on demand."""
        path = self.resolve(spec)
        if path is None:
            raise HookModuleNotFound(spec)
        path = path.resolve()
        if path not in self._loaded:
            self._loaded[path] = _load_module(path, spec)
        return self._loaded[path]


def hook_declaration(manifest: Optional[Manifest]) -> Optional[Dict[str, Any]]:
    """Normalize the manifest's `finalize` field to {"entry", "requires"}."""
    if manifest is None or manifest.finalize is None:
        return None
    raw = manifest.finalize
    if isinstance(raw, str):
        return {"entry": raw, "requires": []}
    if isinstance(raw, dict) and isinstance(raw.get("entry"), str):
        requires = raw.get("requires") or []
        if not isinstance(requires, list):
            requires = [requires]
        return {"entry": raw["entry"], "requires": [str(r) for r in requires]}
    raise FinalizationError(f"Invalid finalize declaration in {manifest.id}: {raw!r}", step="load")


def _run_callable(fn: Any, context: HookContext) -> Any:
    result = fn(context)
    if inspect.isawaitable(result):
        async def _await() -> Any:
            return await result
        return asyncio.run(_await())
    return result


def run_finalization(package_dir: Path, manifest: Optional[Manifest] = None) -> FinalizationOutcome:
    """Load and run the installed package's finalization hook exactly once."""
    package_dir = Path(package_dir)
    if manifest is None:
        manifest = read_installed_manifest(package_dir)

    try:
        declaration = hook_declaration(manifest)
    except FinalizationError as e:
        return FinalizationOutcome.failed(e)
    if declaration is None:
        return FinalizationOutcome.ok()

    entry_spec = declaration["entry"]
    entry = _module_file(package_dir, entry_spec)
    if entry is None or not is_inside(entry, package_dir):
        spec = entry_spec if entry_spec.startswith(("./", "../")) else f"./{entry_spec}"
        err = HookModuleNotFound(spec)
        return FinalizationOutcome.failed(FinalizationError(str(err), step="load", cause=err))

    context = HookContext(package_dir=package_dir, manifest=manifest, base_dir=entry.parent)

    for spec in declaration["requires"]:
        if context.resolve(spec) is None:
            err = HookModuleNotFound(spec)
            return FinalizationOutcome.failed(FinalizationError(str(err), step="requires", cause=err), entry)

    step = "load"
    try:
        module = _load_module(entry, entry_spec)
        fn = getattr(module, HOOK_FUNCTION, None)
        if not callable(fn):
            raise FinalizationError(f"{entry_spec} does not define {HOOK_FUNCTION}(context)", step="load")
        step = "run"
        _run_callable(fn, context)
    except FinalizationError as e:
        return FinalizationOutcome.failed(e, entry)
    except SystemExit as e:
        # sys.exit() must not end the installing process
        if e.code is None or e.code == 0:
            logger.debug("finalization hook %s exited cleanly during %s", entry, step)
            return FinalizationOutcome.ok(entry)
        message = e.code if isinstance(e.code, str) else f"finalization hook exited with status {e.code}"
        return FinalizationOutcome.failed(FinalizationError(message, step=step, cause=e), entry)
    except Exception as e:
        logger.debug("finalization hook %s failed during %s", entry, step, exc_info=True)
        return FinalizationOutcome.failed(FinalizationError(_message(e), step=step, cause=e), entry)

    logger.debug("finalization hook %s completed", entry)
    return FinalizationOutcome.ok(entry)


def _message(exc: BaseException) -> str:
    """The exception's own message; the class name when it has none."""
    text = str(exc)
    return text if text else type(exc).__name__
