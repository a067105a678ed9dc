"""
verify.py - Check a namespace against what an install should have produced.

Usage:
    report = verify_namespace(ns, "npm", Expectation(commands=("npm", "npx")))
    print(report.report())
    assert report.success

Checks (category in brackets):
    [package]   package directory present (or absent when not expected)
    [commands]  each expected command resolves into the package directory
    [links]     no bin entry dangles
    [bin]       bin entries owned by the package are exactly the expected set
    [tree]      dependency container / exact module dir entries
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from global_install.bin_links import entry_names, entry_target, owning_package
from global_install.paths import MODULE_DIR_NAME, GlobalNamespace, is_inside
from global_install.resolve import SearchPath, resolve_command
from global_install.snapshot import bin_entries, snapshot


class Check(NamedTuple):
    status: str     # OK, FAIL or WARN
    category: str
    message: str


class ResultReporter:
    """Outcome of a namespace check run, shared by `verify` and `doctor`.

    Checks are recorded in order and grouped by category when printed; the
    run succeeds when nothing FAILed (warnings do not count against it).
    """

    def __init__(self, title: str = ""):
        self.title = title
        self.checks: List[Check] = []

    def _add(self, status: str, category: str, message: str) -> None:
        self.checks.append(Check(status, category, message))

    def ok(self, category: str, message: str) -> None:
        self._add("OK", category, message)

    def fail(self, category: str, message: str) -> None:
        self._add("FAIL", category, message)

    def warn(self, category: str, message: str) -> None:
        self._add("WARN", category, message)

    def count(self, status: str) -> int:
        return sum(1 for c in self.checks if c.status == status)

    @property
    def passed(self) -> int:
        return self.count("OK")

    @property
    def failed(self) -> int:
        return self.count("FAIL")

    @property
    def warnings(self) -> int:
        return self.count("WARN")

    @property
    def success(self) -> bool:
        return self.failed == 0

    def failures(self) -> List[str]:
        return [c.message for c in self.checks if c.status == "FAIL"]

    def report(self, width: int = 60) -> str:
        """Plain-text report: title, one block per category, summary line."""
        rule = "=" * width
        lines = [rule]
        if self.title:
            lines += [self.title, rule]

        by_category: Dict[str, List[Check]] = {}
        for check in self.checks:
            by_category.setdefault(check.category, []).append(check)
        for category, checks in by_category.items():
            lines += ["", f"[{category}]"]
            lines += [f"  [{c.status}] {c.message}" for c in checks]

        if self.success:
            summary = "PASSED"
            if self.warnings:
                summary += f" ({self.warnings} warnings)"
            summary += f": {self.passed} checks passed"
        else:
            summary = f"FAILED: {self.failed} errors, {self.warnings} warnings"
        lines += ["", "-" * width, summary, rule]
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "success": self.success,
            "checks": [c._asdict() for c in self.checks],
        }


@dataclass(frozen=True)
class Expectation:
    """What the namespace should look like for one package.

    Attributes:
        commands: Commands the package should own (empty: it owns none)
        installed: Whether the package directory should exist
        expect_deps: True/False to require/forbid node_modules in the
            package directory; None to not check
        module_entries: Exact expected children of the package directory
    """
    commands: Tuple[str, ...] = ()
    installed: bool = True
    expect_deps: Optional[bool] = None
    module_entries: Optional[Tuple[str, ...]] = None


def _check_commands(report: ResultReporter, ns: GlobalNamespace, package_dir: Path,
                    commands: Sequence[str], search_path: SearchPath) -> None:
    real_dir = Path(os.path.realpath(package_dir))
    for command in commands:
        resolved = resolve_command(command, search_path, ns.platform)
        if resolved is None:
            report.fail("commands", f"{command} does not resolve")
        elif is_inside(resolved, real_dir) or is_inside(resolved, package_dir):
            report.ok("commands", f"{command} -> {resolved}")
        else:
            report.fail("commands", f"{command} resolves outside {package_dir}: {resolved}")


def _check_links(report: ResultReporter, ns: GlobalNamespace) -> None:
    dangling = []
    for name in bin_entries(ns):
        target = entry_target(ns, ns.bin_dir / name)
        if target is not None and not target.exists():
            dangling.append(name)
    if dangling:
        for name in dangling:
            report.fail("links", f"{name} is dangling")
    else:
        report.ok("links", "no dangling entries")


def _check_bin(report: ResultReporter, ns: GlobalNamespace, package_name: str,
               commands: Sequence[str]) -> None:
    expected = sorted(n for c in commands for n in entry_names(c, ns))
    owned = sorted(
        name for name in snapshot(ns, package_name).bin_entries
        if owning_package(ns, entry_target(ns, ns.bin_dir / name)) == package_name
    )
    if owned == expected:
        report.ok("bin", f"{package_name} owns {owned or 'no entries'}")
    else:
        report.fail("bin", f"{package_name} owns {owned}, expected {expected}")


def _check_tree(report: ResultReporter, entries: Optional[Tuple[str, ...]],
                expectation: Expectation) -> None:
    if expectation.expect_deps is not None:
        has_deps = MODULE_DIR_NAME in (entries or ())
        if has_deps == expectation.expect_deps:
            report.ok("tree", f"{MODULE_DIR_NAME} {'present' if has_deps else 'absent'}")
        else:
            report.fail("tree", f"{MODULE_DIR_NAME} {'present' if has_deps else 'absent'}, "
                                f"expected {'present' if expectation.expect_deps else 'absent'}")
    if expectation.module_entries is not None:
        wanted = tuple(sorted(expectation.module_entries))
        if entries == wanted:
            report.ok("tree", f"entries {list(wanted)}")
        else:
            report.fail("tree", f"entries {list(entries or ())}, expected {list(wanted)}")


def verify_namespace(
    ns: GlobalNamespace,
    package_name: str,
    expectation: Expectation,
    search_path: SearchPath = None,
) -> ResultReporter:
    """Snapshot the namespace and check it against `expectation`.

    `search_path` defaults to the namespace's bin directory alone, so that
    command checks see exactly what the namespace provides.
    """
    if search_path is None:
        search_path = [ns.bin_dir]
    report = ResultReporter(f"verify {package_name} in {ns.prefix}")
    snap = snapshot(ns, package_name)

    if snap.installed == expectation.installed:
        report.ok("package", f"{snap.root_path} {'present' if snap.installed else 'absent'}")
    else:
        report.fail("package", f"{snap.root_path} {'present' if snap.installed else 'absent'}, "
                               f"expected {'present' if expectation.installed else 'absent'}")

    _check_commands(report, ns, snap.root_path, expectation.commands, search_path)
    _check_links(report, ns)
    _check_bin(report, ns, package_name, expectation.commands)
    if expectation.installed:
        _check_tree(report, snap.module_dir_entries, expectation)
    return report
