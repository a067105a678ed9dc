#!/usr/bin/env python3
"""
cli.py - Command line entry point.

Usage:
    global-install install <tarball|name@version> --global [--prefix P] [--force] [--no-finalize]
    global-install uninstall <name> --global
    global-install pack [<dir>] [--pack-destination D]
    global-install publish [<dir|tarball>] [--tag T] [--registry URL]
    global-install ls --global
    global-install which <command>
    global-install verify <name> [--commands a,b] [--expect-deps | --expect-no-deps]
    global-install doctor

Exit status: 0 success, 1 failure (message on stderr as `Error: <message>`),
2 usage error.

Everything this module needs is imported up front: a self-replacing install
moves the tree the running command was started from, and nothing may be
loaded from that tree afterwards.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from global_install import __version__
from global_install.atomic import REMOVED_PREFIX, TRASH_PREFIX
from global_install.bin_links import entry_target
from global_install.config import Config, load_config
from global_install.errors import (
    ConfigError,
    FinalizationError,
    GlobalInstallError,
    InstallFailure,
    RegistryError,
)
from global_install.install import (
    InstallOperation,
    apply,
    list_installed,
    repair,
    uninstall,
)
from global_install.journal import Journal
from global_install.packages import load_manifest_from_archive, pack
from global_install.registry import RegistryClient
from global_install.resolve import resolve_command, which
from global_install.snapshot import command_owners
from global_install.verify import Expectation, ResultReporter, verify_namespace


logger = logging.getLogger("global_install")


def _progress(tag: str):
    def report(message: str) -> None:
        print(f"[{tag}] {message}", file=sys.stderr)
    return report


def _emit(args: argparse.Namespace, data: Any, text: str) -> None:
    if args.json:
        print(json.dumps(data, indent=2))
    elif text:
        print(text)


def _require_global(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if not args.global_:
        parser.error(f"{args.command} only supports global installs; pass --global")


def cmd_install(args: argparse.Namespace, config: Config) -> int:
    ns = config.namespace
    report = _progress("install")
    results: List[Dict[str, Any]] = []
    failed: Optional[FinalizationError] = None
    with RegistryClient(config) as registry:
        for source in args.sources:
            result = apply(
                InstallOperation(source=source, target=ns, force=args.force),
                registry=registry,
                run_finalization_hook=not args.no_finalize,
                report=report,
                lock_timeout=config.lock_timeout,
            )
            results.append(result.to_dict())
            if not args.json:
                print(f"+ {result.id}")
            if not result.succeeded:
                failed = result.finalization.error
                break
    if args.json:
        print(json.dumps(results, indent=2))
    if failed is not None:
        raise failed
    return 0


def cmd_uninstall(args: argparse.Namespace, config: Config) -> int:
    ns = config.namespace
    report = _progress("uninstall")
    removed: Dict[str, List[str]] = {}
    for name in args.names:
        removed[name] = uninstall(ns, name, report=report, lock_timeout=config.lock_timeout)
        if not args.json:
            print(f"- {name}")
    if args.json:
        print(json.dumps(removed, indent=2))
    return 0


def cmd_pack(args: argparse.Namespace, config: Config) -> int:
    result = pack(Path(args.dir), Path(args.pack_destination) if args.pack_destination else None)
    _progress("pack")(f"{len(result['files'])} files, {result['integrity']}")
    _emit(args, result, result["filename"])
    return 0


def cmd_publish(args: argparse.Namespace, config: Config) -> int:
    source = Path(args.source)
    with tempfile.TemporaryDirectory(prefix="global-install-publish-") as tmp:
        if source.is_dir():
            tarball = Path(pack(source, Path(tmp))["path"])
        else:
            tarball = source
        manifest = load_manifest_from_archive(tarball)
        with RegistryClient(config) as registry:
            _progress("publish")(f"Publishing {manifest.id} to {config.registry} with tag {args.tag}")
            registry.publish(manifest, tarball, tag=args.tag)
    _emit(args, {"name": manifest.name, "version": manifest.version, "tag": args.tag}, f"+ {manifest.id}")
    return 0


def cmd_ls(args: argparse.Namespace, config: Config) -> int:
    ns = config.namespace
    installed = list_installed(ns)
    lines = [str(ns.module_root)]
    lines += [f"  {name}@{version or '?'}" for name, version in installed.items()]
    _emit(args, installed, "\n".join(lines))
    return 0


def cmd_which(args: argparse.Namespace, config: Config) -> int:
    entry = which(args.name)
    resolved = resolve_command(args.name)
    if entry is None or resolved is None:
        print(f"Error: {args.name} not found", file=sys.stderr)
        return 1
    _emit(args, {"entry": str(entry), "resolved": str(resolved)}, f"{entry} -> {resolved}")
    return 0


def cmd_verify(args: argparse.Namespace, config: Config) -> int:
    commands = tuple(c for c in (args.commands or "").split(",") if c)
    expectation = Expectation(
        commands=commands,
        installed=not args.absent,
        expect_deps=args.expect_deps,
    )
    report = verify_namespace(config.namespace, args.name, expectation)
    _emit(args, report.to_dict(), report.report())
    return 0 if report.success else 1


def cmd_doctor(args: argparse.Namespace, config: Config) -> int:
    ns = config.namespace
    repaired = repair(ns, report=_progress("doctor"), lock_timeout=config.lock_timeout)
    report = ResultReporter(f"doctor {ns.prefix}")

    for name in repaired:
        report.warn("journal", f"relinked {name} after an interrupted install")
    ok, issues = Journal(ns).verify_chain()
    if ok:
        report.ok("journal", "hash chain intact")
    for issue in issues:
        report.fail("journal", issue)

    owners = command_owners(ns)
    for entry, owner in owners.items():
        target = entry_target(ns, ns.bin_dir / entry)
        if owner is not None:
            report.ok("bin", f"{entry} -> {owner}")
        elif target is not None:
            if target.exists():
                report.warn("bin", f"{entry} points outside the module root: {target}")
            else:
                report.fail("bin", f"{entry} is dangling: {target}")
    if not owners:
        report.ok("bin", "no command entries")

    leftovers = []
    if ns.module_root.is_dir():
        for parent in [ns.module_root, *(p for p in ns.module_root.glob("@*") if p.is_dir())]:
            leftovers += [p.name for p in parent.iterdir() if p.name.startswith((TRASH_PREFIX, REMOVED_PREFIX))]
    for name in leftovers:
        report.warn("tree", f"old tree {name} could not be removed")

    _emit(args, report.to_dict(), report.report())
    return 0 if report.success else 1


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--prefix", help="Global prefix (defaults to config or sys.prefix)")
    common.add_argument("--userconfig", type=Path, help="User rc file")
    common.add_argument("--registry", help="Registry URL")
    common.add_argument("--loglevel", choices=["debug", "info", "warning", "error"], help="Log level")
    common.add_argument("--json", action="store_true", help="Output result as JSON")

    ap = argparse.ArgumentParser(
        prog="global-install",
        description="Install command-line packages into a global prefix",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Install from a packed tarball
    global-install install ./npm-10.0.0.tgz --global

    # Install from the registry
    global-install install npm@latest --global --prefix ~/.local

    # Check what a command resolves to
    global-install which npm
""",
    )
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("install", aliases=["i"], parents=[common], help="Install packages")
    p.add_argument("sources", nargs="+", help="Tarball path or name[@version|@tag]")
    p.add_argument("-g", "--global", dest="global_", action="store_true", help="Install into the global prefix")
    p.add_argument("--force", action="store_true", help="Overwrite commands owned by other packages")
    p.add_argument("--no-finalize", action="store_true", help="Skip the package's finalization hook")
    p.set_defaults(func=cmd_install, needs_global=True)

    p = sub.add_parser("uninstall", aliases=["rm"], parents=[common], help="Remove packages")
    p.add_argument("names", nargs="+")
    p.add_argument("-g", "--global", dest="global_", action="store_true")
    p.set_defaults(func=cmd_uninstall, needs_global=True)

    p = sub.add_parser("pack", parents=[common], help="Create a tarball from a project")
    p.add_argument("dir", nargs="?", default=".")
    p.add_argument("--pack-destination", help="Directory to write the tarball to")
    p.set_defaults(func=cmd_pack)

    p = sub.add_parser("publish", parents=[common], help="Publish a project or tarball")
    p.add_argument("source", nargs="?", default=".")
    p.add_argument("--tag", default="latest", help="dist-tag to publish under")
    p.set_defaults(func=cmd_publish)

    p = sub.add_parser("ls", aliases=["list"], parents=[common], help="List installed packages")
    p.add_argument("-g", "--global", dest="global_", action="store_true")
    p.set_defaults(func=cmd_ls, needs_global=True)

    p = sub.add_parser("which", parents=[common], help="Show what a command resolves to")
    p.add_argument("name")
    p.set_defaults(func=cmd_which)

    p = sub.add_parser("verify", parents=[common], help="Check a package's commands and tree")
    p.add_argument("name")
    p.add_argument("--commands", help="Comma-separated commands the package should own")
    p.add_argument("--absent", action="store_true", help="Expect the package to be absent")
    deps = p.add_mutually_exclusive_group()
    deps.add_argument("--expect-deps", dest="expect_deps", action="store_const", const=True, default=None)
    deps.add_argument("--expect-no-deps", dest="expect_deps", action="store_const", const=False)
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("doctor", parents=[common], help="Repair interrupted installs and check the namespace")
    p.set_defaults(func=cmd_doctor)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    if getattr(args, "needs_global", False):
        _require_global(ap, args)

    overrides = {"prefix": args.prefix, "registry": args.registry, "loglevel": args.loglevel}
    try:
        config = load_config(overrides, userconfig=args.userconfig)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=getattr(logging, config.loglevel.upper(), logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logger.debug("prefix %s, registry %s, pid %d", config.prefix, config.registry, os.getpid())

    try:
        return args.func(args, config)

    except FinalizationError as e:
        # Package is installed; its hook failed
        print(f"Error: {e}", file=sys.stderr)
        return 1

    except InstallFailure as e:
        logger.debug("failed during %s", e.step, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    except RegistryError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    except GlobalInstallError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    except (OSError, ValueError) as e:
        logger.debug("unexpected failure", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("Error: interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
