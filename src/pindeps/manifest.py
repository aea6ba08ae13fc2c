"""Manifest model: component identity, dependency pins, and build environment.

A pin is either a published version (``"6"``, ``"1.2.0"``) fetched from the
remote store, or a stash reference (``"ciscossl=asan"``) resolved from the
local artifact cache.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from pindeps.errors import (
    DuplicateDependencyNameError,
    InvalidEnvironmentNameError,
    MalformedManifestError,
    ValidationError,
)

MANIFEST_FILENAME = "manifest.json"

VERSION_PATTERN = re.compile(r"^\d+(\.\d+)*$")
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")
ENVIRONMENT_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")


@dataclass(frozen=True, slots=True)
class Published:
    """An immutable, remotely fetchable build."""

    version: str


@dataclass(frozen=True, slots=True)
class Stashed:
    """A build held in the local stash, never resolved remotely."""

    label: str


VersionRef = Published | Stashed


@dataclass(frozen=True, slots=True)
class Manifest:
    name: str
    dependencies: dict[str, VersionRef] = field(default_factory=dict)
    dev_dependencies: dict[str, VersionRef] = field(default_factory=dict)
    environment: str | None = None

    def pin_for(self, name: str) -> VersionRef | None:
        if name in self.dependencies:
            return self.dependencies[name]
        return self.dev_dependencies.get(name)

    def declares(self, name: str) -> bool:
        return name in self.dependencies or name in self.dev_dependencies

    def is_dev(self, name: str) -> bool:
        return name in self.dev_dependencies and name not in self.dependencies

    def all_dependencies(self) -> dict[str, VersionRef]:
        merged = dict(self.dev_dependencies)
        merged.update(self.dependencies)
        return merged


def parse_version_ref(name: str, raw: object) -> VersionRef:
    """Parse a manifest or command-line pin for dependency ``name``."""
    if isinstance(raw, int) and not isinstance(raw, bool):
        if raw < 0:
            raise ValidationError(
                "Dependency version must not be negative.",
                context={"name": name, "version": str(raw)},
            )
        return Published(str(raw))
    if not isinstance(raw, str) or not raw:
        raise ValidationError(
            "Dependency reference must be a non-empty string.",
            context={"name": name},
        )
    if "=" in raw:
        prefix, _, label = raw.partition("=")
        if prefix != name or not label:
            raise ValidationError(
                "Stash reference must be written as `<name>=<label>`.",
                hint=f"Use `{name}=<label>`.",
                context={"name": name, "reference": raw},
            )
        if VERSION_PATTERN.fullmatch(label):
            raise ValidationError(
                "Stash labels must not look like a published version.",
                hint=f"Use `{label}` to pin the published version.",
                context={"name": name, "reference": raw},
            )
        return Stashed(label)
    if not VERSION_PATTERN.fullmatch(raw):
        raise ValidationError(
            "Published versions must be dot-separated numbers.",
            hint=f"Use `{name}={raw}` to reference a stashed build instead.",
            context={"name": name, "version": raw},
        )
    return Published(raw)


def format_version_ref(name: str, ref: VersionRef) -> str:
    if isinstance(ref, Published):
        return ref.version
    return f"{name}={ref.label}"


def describe_ref(ref: VersionRef | None) -> str:
    if ref is None:
        return "unknown"
    if isinstance(ref, Published):
        return f"version {ref.version}"
    return f"stash label {ref.label}"


def init_manifest(name: str, environment: str | None = None) -> Manifest:
    if not NAME_PATTERN.fullmatch(name):
        raise ValidationError("Invalid component name.", context={"name": name})
    return validate(Manifest(name=name, environment=environment))


def load(path: str | Path) -> Manifest:
    manifest_path = Path(path)
    try:
        raw = manifest_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise MalformedManifestError(
            "Manifest does not exist.",
            hint="Run `pindeps init` to create one.",
            context={"path": str(manifest_path)},
        ) from exc
    return parse_manifest(raw, path=manifest_path)


def parse_manifest(raw: str | bytes, *, path: Path | None = None) -> Manifest:
    context = {"path": str(path)} if path is not None else {}
    try:
        payload = json.loads(raw, object_pairs_hook=_reject_duplicate_keys)
    except json.JSONDecodeError as exc:
        raise MalformedManifestError(
            "Invalid manifest JSON.", hint=str(exc), context=context
        ) from exc
    except _DuplicateKey as exc:
        raise MalformedManifestError(
            f"Key `{exc.key}` appears more than once in the manifest.",
            context={**context, "name": exc.key},
        ) from exc
    if not isinstance(payload, dict):
        raise MalformedManifestError("Manifest must be a JSON object.", context=context)

    name = payload.get("name")
    if not isinstance(name, str) or not NAME_PATTERN.fullmatch(name):
        raise MalformedManifestError("Invalid manifest `name` value.", context=context)
    environment = payload.get("environment")
    if environment is not None and not isinstance(environment, str):
        raise MalformedManifestError("Invalid manifest `environment` value.", context=context)

    return Manifest(
        name=name,
        dependencies=_parse_pins(payload, "dependencies", context),
        dev_dependencies=_parse_pins(payload, "devDependencies", context),
        environment=environment or None,
    )


def validate(manifest: Manifest, *, require_environment: bool = False) -> Manifest:
    """Check cross-field invariants; returns the manifest unchanged on success."""
    shared = sorted(set(manifest.dependencies) & set(manifest.dev_dependencies))
    if shared:
        raise DuplicateDependencyNameError(
            f"Dependency `{shared[0]}` is declared in both dependencies and devDependencies.",
            hint="Keep each dependency in exactly one of the two maps.",
            context={"name": shared[0], "component": manifest.name},
        )
    if manifest.environment is None:
        if require_environment:
            raise InvalidEnvironmentNameError(
                "Manifest does not name a build environment.",
                hint="Set `environment` in manifest.json.",
                context={"component": manifest.name},
            )
    elif not ENVIRONMENT_PATTERN.fullmatch(manifest.environment):
        raise InvalidEnvironmentNameError(
            f"Invalid environment name `{manifest.environment}`.",
            hint="Environment names are lowercase letters, digits, `.`, `_` and `-`.",
            context={"component": manifest.name, "environment": manifest.environment},
        )
    return manifest


def with_dependency(manifest: Manifest, name: str, ref: VersionRef, is_dev: bool) -> Manifest:
    """Return a copy pinning ``name`` to ``ref`` in the chosen dependency map."""
    if not NAME_PATTERN.fullmatch(name):
        raise ValidationError("Invalid dependency name.", context={"name": name})
    dependencies = dict(manifest.dependencies)
    dev_dependencies = dict(manifest.dev_dependencies)
    target, other = (dev_dependencies, dependencies) if is_dev else (dependencies, dev_dependencies)
    other.pop(name, None)
    target[name] = ref
    return replace(
        manifest,
        dependencies=dict(sorted(dependencies.items())),
        dev_dependencies=dict(sorted(dev_dependencies.items())),
    )


def without_dependency(manifest: Manifest, name: str, is_dev: bool) -> Manifest:
    source = manifest.dev_dependencies if is_dev else manifest.dependencies
    if name not in source:
        section = "devDependencies" if is_dev else "dependencies"
        raise ValidationError(
            f"Component `{name}` not found in manifest {section}.",
            context={"name": name, "component": manifest.name},
        )
    remaining = {key: value for key, value in source.items() if key != name}
    if is_dev:
        return replace(manifest, dev_dependencies=remaining)
    return replace(manifest, dependencies=remaining)


def serialize(manifest: Manifest) -> bytes:
    payload: dict[str, Any] = {
        "name": manifest.name,
        "dependencies": _format_pins(manifest.dependencies),
        "devDependencies": _format_pins(manifest.dev_dependencies),
    }
    if manifest.environment is not None:
        payload["environment"] = manifest.environment
    return (json.dumps(payload, indent=2, sort_keys=True) + "\n").encode("utf-8")


def write_manifest(manifest: Manifest, path: str | Path) -> Path:
    manifest_path = Path(path)
    temp_path = manifest_path.with_name(f".{manifest_path.name}.tmp")
    temp_path.write_bytes(serialize(manifest))
    os.replace(temp_path, manifest_path)
    return manifest_path


class _DuplicateKey(Exception):
    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key


def _reject_duplicate_keys(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise _DuplicateKey(key)
        result[key] = value
    return result


def _parse_pins(
    payload: Mapping[str, Any], key: str, context: dict[str, str]
) -> dict[str, VersionRef]:
    value = payload.get(key, {})
    if not isinstance(value, dict):
        raise MalformedManifestError(f"Invalid manifest `{key}` value.", context=context)
    pins: dict[str, VersionRef] = {}
    for name, raw in sorted(value.items()):
        if not NAME_PATTERN.fullmatch(name):
            raise MalformedManifestError(
                f"Invalid dependency name in `{key}`.", context={**context, "name": name}
            )
        try:
            pins[name] = parse_version_ref(name, raw)
        except ValidationError as exc:
            raise MalformedManifestError(
                f"Invalid pin for `{name}` in `{key}`.",
                hint=exc.hint,
                context={**context, **exc.context},
            ) from exc
    return pins


def _format_pins(pins: Mapping[str, VersionRef]) -> dict[str, str]:
    return {name: format_version_ref(name, ref) for name, ref in sorted(pins.items())}
