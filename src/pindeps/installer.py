"""Whole-plan atomic installation of dependencies into the input tree.

Every entry is fetched (or copied from the stash), verified, and staged in a
private directory next to the input tree before anything is swapped into
place. A failure while staging discards the staging area and leaves the
installed tree exactly as it was; the manifest is only rewritten after the
whole plan has been committed.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from pindeps.config import Config
from pindeps.errors import IncompleteInstallError, ValidationError
from pindeps.manifest import Published, load, validate, with_dependency, write_manifest
from pindeps.observability import StructuredLogger
from pindeps.resolver import InstallPlan, PlanEntry
from pindeps.stash import Stash
from pindeps.store import ArtifactStore, extract_tarball, fetch_published
from pindeps.tree import (
    InstalledTree,
    read_installed_tree,
    tree_digest,
    verify_tree,
    write_sidecar,
)

PREVIOUS_DIRNAME = ".previous"


@dataclass(frozen=True, slots=True)
class InstallOptions:
    save: bool = False
    save_dev: bool = False
    force: bool = False
    manifest_path: Path | None = None


class Installer:
    def __init__(
        self,
        *,
        store: ArtifactStore,
        stash: Stash,
        config: Config,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.store = store
        self.stash = stash
        self.config = config
        self.logger = logger or StructuredLogger()

    def execute(
        self,
        plan: InstallPlan,
        input_dir: str | Path,
        options: InstallOptions | None = None,
    ) -> InstalledTree:
        options = options or InstallOptions()
        if options.save and options.save_dev:
            raise ValidationError("Choose only one of --save and --save-dev.")
        if (options.save or options.save_dev) and options.manifest_path is None:
            raise ValidationError("Saving pins requires the manifest path.")

        input_root = Path(input_dir)
        input_root.parent.mkdir(parents=True, exist_ok=True)
        current = read_installed_tree(input_root)

        staging = Path(
            tempfile.mkdtemp(prefix=f".{input_root.name}.staging-", dir=str(input_root.parent))
        )
        try:
            staged: list[tuple[PlanEntry, Path]] = []
            for entry in plan.entries:
                if not options.force and self._reusable(entry, current):
                    self._log(entry, "reuse", f"Reuse {entry.name} {_describe(entry)}")
                    continue
                staged.append((entry, self._stage(entry, staging)))
            self._commit(staged, input_root, staging)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        if options.save or options.save_dev:
            self._save(plan, options)
        return read_installed_tree(input_root)

    def remove(self, names: Iterable[str], input_dir: str | Path) -> tuple[str, ...]:
        input_root = Path(input_dir)
        removed: list[str] = []
        for name in sorted(set(names)):
            target = input_root / name
            if target.is_dir():
                shutil.rmtree(target)
                removed.append(name)
                self.logger.log(
                    operation="remove",
                    phase="remove",
                    dependency=name,
                    message=f"Removed {name} from {input_root.name}",
                )
        return tuple(removed)

    def _reusable(self, entry: PlanEntry, current: InstalledTree) -> bool:
        # stashed builds are mutable by label and always recopied
        if not isinstance(entry.ref, Published):
            return False
        installed = current.dependencies.get(entry.name)
        if installed is None or installed.ref != entry.ref or installed.digest is None:
            return False
        return tree_digest(installed.path) == installed.digest

    def _stage(self, entry: PlanEntry, staging: Path) -> Path:
        target = staging / entry.name
        self._log(entry, "stage", f"Fetch {entry.name} {_describe(entry)}")
        try:
            if isinstance(entry.ref, Published):
                tarball = fetch_published(
                    self.store,
                    entry.name,
                    entry.ref.version,
                    cache_dir=self.config.cache_dir,
                    timeout=self.config.fetch_timeout,
                    retries=self.config.fetch_retries,
                    retry_delay=self.config.retry_delay,
                    require_integrity=self.config.require_integrity,
                    logger=self.logger,
                )
                extract_tarball(tarball, target, name=entry.name, version=entry.ref.version)
                digest = tree_digest(target)
            else:
                stashed = self.stash.entry(entry.name, entry.ref.label)
                shutil.copytree(stashed.path, target, symlinks=True)
                digest = verify_tree(target, expected=stashed.digest, name=entry.name, ref=entry.ref)
            write_sidecar(target, name=entry.name, ref=entry.ref, digest=digest)
        except OSError as exc:
            raise IncompleteInstallError(
                f"Failed to stage `{entry.name}`.",
                hint="Installed dependencies were left untouched.",
                context={"name": entry.name, "source": entry.location, "error": str(exc)},
            ) from exc
        self._log(entry, "verify", f"Verified {entry.name} {_describe(entry)}", digest=digest)
        return target

    def _commit(
        self,
        staged: list[tuple[PlanEntry, Path]],
        input_root: Path,
        staging: Path,
    ) -> None:
        if not staged:
            return
        input_root.mkdir(parents=True, exist_ok=True)
        previous_root = staging / PREVIOUS_DIRNAME
        previous_root.mkdir()
        placed: list[str] = []
        current_name: str | None = None
        try:
            for entry, staged_dir in staged:
                current_name = entry.name
                target = input_root / entry.name
                if target.exists() or target.is_symlink():
                    os.rename(target, previous_root / entry.name)
                os.rename(staged_dir, target)
                placed.append(entry.name)
                self._log(entry, "commit", f"Installed {entry.name} {_describe(entry)}")
        except BaseException as exc:
            names = placed if current_name in placed else [*placed, current_name]
            self._rollback(names, placed, input_root, previous_root)
            if isinstance(exc, OSError):
                raise IncompleteInstallError(
                    "Install failed while swapping dependencies into place.",
                    hint="Previously installed dependencies were restored.",
                    context={"name": current_name or "", "error": str(exc)},
                ) from exc
            raise

    def _rollback(
        self,
        names: list[str | None],
        placed: list[str],
        input_root: Path,
        previous_root: Path,
    ) -> None:
        for name in reversed(names):
            if name is None:
                continue
            target = input_root / name
            previous = previous_root / name
            if name in placed:
                shutil.rmtree(target, ignore_errors=True)
            if previous.exists() or previous.is_symlink():
                os.rename(previous, target)

    def _save(self, plan: InstallPlan, options: InstallOptions) -> None:
        manifest_path = Path(options.manifest_path or "")
        manifest = load(manifest_path)
        for entry in plan.entries:
            if manifest.pin_for(entry.name) == entry.ref:
                continue
            manifest = with_dependency(manifest, entry.name, entry.ref, options.save_dev)
        write_manifest(validate(manifest), manifest_path)
        self.logger.log(
            operation="install",
            phase="save",
            component=manifest.name,
            message=f"Updated {manifest_path.name} with installed pins",
        )

    def _log(self, entry: PlanEntry, phase: str, message: str, **extra: str) -> None:
        self.logger.log(
            operation="install",
            phase=phase,
            dependency=entry.name,
            message=message,
            extra={"source": entry.location, **extra},
        )


def _describe(entry: PlanEntry) -> str:
    if isinstance(entry.ref, Published):
        return entry.ref.version
    return f"(stash {entry.ref.label})"
