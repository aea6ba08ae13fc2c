"""Command-line interface.

Usage:
    pindeps init NAME --env ENV
    pindeps install [SPEC ...] [--dev] [--save | --save-dev] [--force]
    pindeps remove NAME ... [--save | --save-dev]
    pindeps stash LABEL
    pindeps export NAME=VERSION|NAME=LABEL [-o DIR]
    pindeps status [--core]
    pindeps build | test
    pindeps shell [-- ARGV ...]
    pindeps configure
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pindeps import __version__
from pindeps.config import config_path, default_config, load_config, write_config
from pindeps.errors import PindepsError
from pindeps.observability import StructuredLogger
from pindeps.resolver import parse_overrides
from pindeps.status import format_drift
from pindeps.workspace import Workspace


def _print_record(record: dict[str, Any]) -> None:
    if record["level"] == "debug":
        return
    print(f"[{record['level']}] {record['message']}", file=sys.stderr)


def cmd_configure(args: argparse.Namespace) -> int:
    path = write_config(default_config(), args.config)
    print(f"Wrote config {path}")
    return 0


def cmd_init(args: argparse.Namespace, workspace: Workspace) -> int:
    manifest = workspace.init(args.name, args.env, force=args.force)
    print(f"Created {workspace.manifest_path} for {manifest.name}")
    return 0


def cmd_install(args: argparse.Namespace, workspace: Workspace) -> int:
    tree = workspace.install(
        parse_overrides(args.specs),
        dev=args.dev,
        save=args.save,
        save_dev=args.save_dev,
        force=args.force,
    )
    print(f"Installed {len(tree.dependencies)} dependencies in {tree.root}")
    return 0


def cmd_remove(args: argparse.Namespace, workspace: Workspace) -> int:
    removed = workspace.remove(args.names, save=args.save, save_dev=args.save_dev)
    for name in removed:
        print(f"Removed {name}")
    return 0


def cmd_stash(args: argparse.Namespace, workspace: Workspace) -> int:
    entry = workspace.stash(args.label)
    print(f"Stashed {entry.component}={entry.label}")
    return 0


def cmd_export(args: argparse.Namespace, workspace: Workspace) -> int:
    path = workspace.export(args.spec, args.output)
    print(f"Exported {args.spec} to {path}")
    return 0


def cmd_status(args: argparse.Namespace, workspace: Workspace) -> int:
    drift = workspace.status(include_dev=not args.core)
    for line in format_drift(drift):
        print(line)
    if not drift:
        print("Dependencies match the manifest.")
    return 1 if drift else 0


def cmd_build(args: argparse.Namespace, workspace: Workspace) -> int:
    return workspace.build(version=args.with_version).returncode


def cmd_test(args: argparse.Namespace, workspace: Workspace) -> int:
    return workspace.test().returncode


def cmd_shell(args: argparse.Namespace, workspace: Workspace) -> int:
    argv = args.argv[1:] if args.argv[:1] == ["--"] else args.argv
    return workspace.shell(argv or None).returncode


COMMANDS = {
    "init": cmd_init,
    "install": cmd_install,
    "remove": cmd_remove,
    "stash": cmd_stash,
    "export": cmd_export,
    "status": cmd_status,
    "build": cmd_build,
    "test": cmd_test,
    "shell": cmd_shell,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pindeps",
        description="Pinned dependency manager for component builds",
    )
    parser.add_argument("--version", action="version", version=f"pindeps {__version__}")
    parser.add_argument(
        "-C",
        "--directory",
        type=Path,
        default=Path("."),
        help="Component checkout to operate on",
    )
    parser.add_argument("--config", type=Path, default=None, help="Config file path")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("configure", help=f"Write a default config to {config_path()}")

    init_p = sub.add_parser("init", help="Create a manifest for a new component")
    init_p.add_argument("name")
    init_p.add_argument("--env", default=None, help="Build environment name")
    init_p.add_argument("-f", "--force", action="store_true", help="Overwrite an existing manifest")

    install_p = sub.add_parser("install", help="Install dependencies into INPUT")
    install_p.add_argument("specs", nargs="*", help="name=version or name=stash-label")
    install_p.add_argument("--dev", action="store_true", help="Include devDependencies")
    save_group = install_p.add_mutually_exclusive_group()
    save_group.add_argument("--save", action="store_true", help="Pin into dependencies")
    save_group.add_argument("--save-dev", action="store_true", help="Pin into devDependencies")
    install_p.add_argument("--force", action="store_true", help="Refetch even if up to date")

    remove_p = sub.add_parser("remove", help="Remove dependencies from INPUT")
    remove_p.add_argument("names", nargs="+")
    remove_group = remove_p.add_mutually_exclusive_group()
    remove_group.add_argument("--save", action="store_true", help="Drop from dependencies")
    remove_group.add_argument("--save-dev", action="store_true", help="Drop from devDependencies")

    stash_p = sub.add_parser("stash", help="Stash OUTPUT in the local cache under a label")
    stash_p.add_argument("label")

    export_p = sub.add_parser("export", help="Write a published or stashed build tarball")
    export_p.add_argument("spec", help="name=version or name=stash-label")
    export_p.add_argument("-o", "--output", type=Path, default=Path("."), help="Output directory")

    status_p = sub.add_parser("status", help="Report drift between INPUT and the manifest")
    status_p.add_argument("--core", action="store_true", help="Ignore devDependencies")

    build_p = sub.add_parser("build", help="Build the component in its environment")
    build_p.add_argument("--with-version", default=None, help="Version recorded in the lockfile")
    sub.add_parser("test", help="Test the component in its environment")

    shell_p = sub.add_parser("shell", help="Open a shell (or run a command) in the environment")
    shell_p.add_argument("argv", nargs=argparse.REMAINDER)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        if args.command == "configure":
            return cmd_configure(args)
        workspace = Workspace(
            root=args.directory,
            config=load_config(args.config),
            logger=StructuredLogger(sink=_print_record),
        )
        return COMMANDS[args.command](args, workspace)
    except PindepsError as exc:
        print(f"error[{exc.code}]: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
