"""Flat dependency resolution from manifest pins and explicit overrides.

Only a component's direct dependencies are resolved. Whatever a published
dependency was itself built against is baked into its artifact; the remote
store is the authority for that content, which is safe because a given
``(name, version)`` is immutable.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from pindeps.errors import UnknownOverrideTargetError, ValidationError
from pindeps.manifest import (
    NAME_PATTERN,
    VERSION_PATTERN,
    Manifest,
    Published,
    Stashed,
    VersionRef,
    with_dependency,
)


@dataclass(frozen=True, slots=True)
class PlanEntry:
    name: str
    ref: VersionRef
    dev: bool = False

    @property
    def location(self) -> str:
        if isinstance(self.ref, Published):
            return f"store:{self.name}/{self.ref.version}"
        return f"stash:{self.name}/{self.ref.label}"


@dataclass(frozen=True, slots=True)
class InstallPlan:
    entries: tuple[PlanEntry, ...] = ()

    def names(self) -> tuple[str, ...]:
        return tuple(entry.name for entry in self.entries)

    def as_dict(self) -> dict[str, VersionRef]:
        return {entry.name: entry.ref for entry in self.entries}

    def __len__(self) -> int:
        return len(self.entries)


def parse_override(token: str) -> tuple[str, VersionRef]:
    """Parse ``name=version`` or ``name=label`` from the command surface.

    A value that looks like a version (dot-separated numbers) is a published
    pin; anything else is a stash label.
    """
    name, sep, value = token.partition("=")
    if not sep or not name or not value:
        raise ValidationError(
            f"Invalid dependency spec `{token}`.",
            hint="Use `<name>=<version>` or `<name>=<stash-label>`.",
            context={"spec": token},
        )
    if not NAME_PATTERN.fullmatch(name):
        raise ValidationError("Invalid dependency name.", context={"name": name})
    if VERSION_PATTERN.fullmatch(value):
        return name, Published(value)
    return name, Stashed(value)


def parse_overrides(tokens: Iterable[str]) -> dict[str, VersionRef]:
    overrides: dict[str, VersionRef] = {}
    for token in tokens:
        name, ref = parse_override(token)
        if name in overrides and overrides[name] != ref:
            raise ValidationError(
                f"Conflicting specs for `{name}`.",
                context={"name": name},
            )
        overrides[name] = ref
    return overrides


def declare_overrides(
    manifest: Manifest,
    overrides: Mapping[str, VersionRef],
    *,
    is_dev: bool,
) -> Manifest:
    """Declare override targets the manifest does not know about yet."""
    updated = manifest
    for name, ref in sorted(overrides.items()):
        if not updated.declares(name):
            updated = with_dependency(updated, name, ref, is_dev)
    return updated


def resolve(
    manifest: Manifest,
    overrides: Mapping[str, VersionRef] | None = None,
    *,
    include_dev: bool = False,
    only_overrides: bool = False,
) -> InstallPlan:
    requested = dict(overrides or {})
    unknown = sorted(name for name in requested if not manifest.declares(name))
    if unknown:
        raise UnknownOverrideTargetError(
            f"Dependency `{unknown[0]}` is not declared in the manifest.",
            hint="Install it with --save or --save-dev to add it to the manifest first.",
            context={"name": unknown[0], "component": manifest.name},
        )

    selected: dict[str, bool] = {}
    if not only_overrides:
        selected.update({name: False for name in manifest.dependencies})
        if include_dev:
            selected.update({name: True for name in manifest.dev_dependencies})
    for name in requested:
        selected[name] = manifest.is_dev(name)

    pins = manifest.all_dependencies()
    entries = [
        PlanEntry(name=name, ref=requested.get(name, pins[name]), dev=selected[name])
        for name in sorted(selected)
    ]
    return InstallPlan(entries=tuple(entries))
