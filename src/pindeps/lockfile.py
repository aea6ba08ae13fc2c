"""Build lockfile: what a build output was built from.

Written to ``OUTPUT/lockfile.json`` after a successful build. It nests the
lockfiles shipped inside each installed dependency, so the full set of
component versions that went into an artifact can be audited later.
"""

from __future__ import annotations

import json
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import cbor2

from pindeps import __version__
from pindeps.environment import BuildEnvironmentDescriptor
from pindeps.errors import LockfileError
from pindeps.manifest import Manifest
from pindeps.tree import InstalledTree

LOCKFILE_FILENAME = "lockfile.json"


@dataclass(frozen=True, slots=True)
class Lockfile:
    name: str
    version: str
    environment: str
    image: str
    tool: str
    dependencies: dict[str, Lockfile] = field(default_factory=dict)

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(_payload(self), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(_payload(self), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded


def build_lockfile(
    manifest: Manifest,
    descriptor: BuildEnvironmentDescriptor,
    tree: InstalledTree,
    *,
    version: str | None = None,
) -> Lockfile:
    dependencies: dict[str, Lockfile] = {}
    for name, installed in sorted(tree.dependencies.items()):
        nested = installed.path / LOCKFILE_FILENAME
        if nested.exists():
            dependencies[name] = read_lockfile(nested)
    return Lockfile(
        name=manifest.name,
        version=version or f"EXPERIMENTAL+{secrets.token_hex(8)}",
        environment=descriptor.environment,
        image=descriptor.image,
        tool=__version__,
        dependencies=dependencies,
    )


def serialize_lockfile(lockfile: Lockfile) -> str:
    return lockfile.to_json()


def parse_lockfile(raw: str) -> Lockfile:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LockfileError("Invalid lockfile JSON.", hint=str(exc)) from exc
    return _from_payload(payload)


def read_lockfile(path: str | Path) -> Lockfile:
    lock_path = Path(path)
    try:
        raw = lock_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise LockfileError(
            "Lockfile does not exist.",
            context={"path": str(lock_path)},
        ) from exc
    return parse_lockfile(raw)


def write_lockfile(lockfile: Lockfile, path: str | Path) -> Path:
    lock_path = Path(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = lock_path.with_name(f".{lock_path.name}.tmp")
    temp_path.write_text(serialize_lockfile(lockfile), encoding="utf-8")
    os.replace(temp_path, lock_path)
    return lock_path


def dependency_usage(lockfile: Lockfile) -> dict[str, set[str]]:
    """Map every component in the lockfile tree to the versions it appears at."""
    usage: dict[str, set[str]] = {}
    for name, dependency in lockfile.dependencies.items():
        usage.setdefault(name, set()).add(dependency.version)
        for nested_name, versions in dependency_usage(dependency).items():
            usage.setdefault(nested_name, set()).update(versions)
    return usage


def multiple_versions(lockfile: Lockfile) -> dict[str, tuple[str, ...]]:
    return {
        name: tuple(sorted(versions))
        for name, versions in sorted(dependency_usage(lockfile).items())
        if len(versions) > 1
    }


def _payload(lockfile: Lockfile) -> dict[str, Any]:
    return {
        "name": lockfile.name,
        "version": lockfile.version,
        "environment": lockfile.environment,
        "image": lockfile.image,
        "tool": lockfile.tool,
        "dependencies": {
            name: _payload(dependency) for name, dependency in sorted(lockfile.dependencies.items())
        },
    }


def _from_payload(payload: Any) -> Lockfile:
    if not isinstance(payload, dict):
        raise LockfileError("Invalid lockfile payload type.")
    dependencies_raw = payload.get("dependencies", {})
    if not isinstance(dependencies_raw, dict):
        raise LockfileError("Invalid lockfile `dependencies` value.")
    return Lockfile(
        name=_required_str(payload, "name"),
        version=_required_str(payload, "version"),
        environment=_required_str(payload, "environment"),
        image=_required_str(payload, "image"),
        tool=_required_str(payload, "tool"),
        dependencies={name: _from_payload(item) for name, item in dependencies_raw.items()},
    )


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise LockfileError(f"Invalid lockfile `{key}` value.")
    return value
