"""On-disk installed dependency tree and its per-dependency sidecar records."""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from pindeps.errors import IntegrityCheckFailedError
from pindeps.manifest import Published, Stashed, VersionRef

SIDECAR_FILENAME = ".pindeps-installed.json"


@dataclass(frozen=True, slots=True)
class InstalledDependency:
    name: str
    path: Path
    ref: VersionRef | None
    digest: str | None = None


@dataclass(frozen=True, slots=True)
class InstalledTree:
    root: Path
    dependencies: dict[str, InstalledDependency] = field(default_factory=dict)

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self.dependencies))

    def ref_for(self, name: str) -> VersionRef | None:
        installed = self.dependencies.get(name)
        return installed.ref if installed is not None else None


def tree_digest(path: str | Path) -> str:
    """Digest a directory by relative path, mode, and content.

    Symlinks contribute their target rather than the file they point at, and
    the sidecar record is excluded so that a staged tree and its published
    source digest the same.
    """
    root = Path(path)
    hasher = hashlib.sha256()
    for current, dirnames, filenames in os.walk(root):
        dirnames.sort()
        current_path = Path(current)
        for dirname in list(dirnames):
            entry = current_path / dirname
            if entry.is_symlink():
                # os.walk does not descend into directory symlinks; hash them as links
                dirnames.remove(dirname)
                filenames.append(dirname)
        for filename in sorted(filenames):
            entry = current_path / filename
            rel = entry.relative_to(root).as_posix()
            if rel == SIDECAR_FILENAME:
                continue
            if entry.is_symlink():
                hasher.update(f"L {rel} {os.readlink(entry)}\n".encode())
                continue
            mode = entry.stat().st_mode & 0o111
            hasher.update(f"F {rel} {mode:o}\n".encode())
            with entry.open("rb") as handle:
                for chunk in iter(lambda: handle.read(65536), b""):
                    hasher.update(chunk)
    return hasher.hexdigest()


def ref_to_payload(ref: VersionRef) -> dict[str, str]:
    if isinstance(ref, Published):
        return {"kind": "published", "version": ref.version}
    return {"kind": "stashed", "label": ref.label}


def ref_from_payload(payload: object) -> VersionRef | None:
    if not isinstance(payload, dict):
        return None
    kind = payload.get("kind")
    if kind == "published" and isinstance(payload.get("version"), str):
        return Published(payload["version"])
    if kind == "stashed" and isinstance(payload.get("label"), str):
        return Stashed(payload["label"])
    return None


def write_sidecar(dependency_dir: Path, *, name: str, ref: VersionRef, digest: str) -> Path:
    sidecar = dependency_dir / SIDECAR_FILENAME
    payload = {"name": name, "ref": ref_to_payload(ref), "digest": digest}
    sidecar.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return sidecar


def read_sidecar(dependency_dir: Path) -> tuple[VersionRef | None, str | None]:
    sidecar = dependency_dir / SIDECAR_FILENAME
    try:
        payload = json.loads(sidecar.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None, None
    except json.JSONDecodeError:
        return None, None
    if not isinstance(payload, dict):
        return None, None
    digest = payload.get("digest")
    return ref_from_payload(payload.get("ref")), digest if isinstance(digest, str) else None


def read_installed_tree(root: str | Path) -> InstalledTree:
    tree_root = Path(root)
    dependencies: dict[str, InstalledDependency] = {}
    if not tree_root.is_dir():
        return InstalledTree(root=tree_root)
    for entry in sorted(tree_root.iterdir()):
        if entry.name.startswith(".") or not entry.is_dir():
            continue
        ref, digest = read_sidecar(entry)
        dependencies[entry.name] = InstalledDependency(
            name=entry.name, path=entry, ref=ref, digest=digest
        )
    return InstalledTree(root=tree_root, dependencies=dependencies)


def verify_tree(path: Path, *, expected: str, name: str, ref: VersionRef) -> str:
    actual = tree_digest(path)
    if actual != expected:
        context = {"name": name, "expected": expected, "actual": actual}
        if isinstance(ref, Published):
            context["version"] = ref.version
        else:
            context["label"] = ref.label
        raise IntegrityCheckFailedError(
            f"Content digest mismatch for `{name}`.",
            hint="The source entry is corrupt; re-stash or refetch it.",
            context=context,
        )
    return actual
