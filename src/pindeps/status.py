"""Drift between manifest pins and the installed dependency tree."""

from __future__ import annotations

from dataclasses import dataclass

from pindeps.manifest import Manifest, Stashed, VersionRef, describe_ref
from pindeps.tree import InstalledTree


@dataclass(frozen=True, slots=True)
class Missing:
    name: str
    declared: VersionRef


@dataclass(frozen=True, slots=True)
class Extra:
    name: str
    installed: VersionRef | None


@dataclass(frozen=True, slots=True)
class Mismatched:
    name: str
    declared: VersionRef
    installed: VersionRef | None


DriftEntry = Missing | Extra | Mismatched


def diff(
    manifest: Manifest,
    tree: InstalledTree,
    *,
    include_dev: bool = True,
) -> tuple[DriftEntry, ...]:
    declared = dict(manifest.dependencies)
    if include_dev:
        declared.update(manifest.dev_dependencies)
    # dev dependencies on disk are not extraneous just because they were not asked about
    known = set(declared) | set(manifest.dev_dependencies)

    entries: list[DriftEntry] = []
    for name in sorted(set(declared) | set(tree.dependencies)):
        if name not in tree.dependencies:
            entries.append(Missing(name=name, declared=declared[name]))
        elif name not in declared:
            if name not in known:
                entries.append(Extra(name=name, installed=tree.ref_for(name)))
        elif tree.ref_for(name) != declared[name]:
            entries.append(
                Mismatched(name=name, declared=declared[name], installed=tree.ref_for(name))
            )
    return tuple(entries)


def stashed_dependencies(tree: InstalledTree) -> tuple[str, ...]:
    """Names installed from the local stash; such builds cannot be reproduced elsewhere."""
    return tuple(
        name
        for name, installed in sorted(tree.dependencies.items())
        if isinstance(installed.ref, Stashed)
    )


def format_drift(entries: tuple[DriftEntry, ...]) -> list[str]:
    lines: list[str] = []
    for entry in entries:
        if isinstance(entry, Missing):
            lines.append(f"missing    {entry.name} (declared {describe_ref(entry.declared)})")
        elif isinstance(entry, Extra):
            lines.append(f"extraneous {entry.name} (installed {describe_ref(entry.installed)})")
        else:
            lines.append(
                f"mismatch   {entry.name} (declared {describe_ref(entry.declared)}, "
                f"installed {describe_ref(entry.installed)})"
            )
    return lines
