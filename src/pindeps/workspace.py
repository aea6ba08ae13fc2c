"""Component checkout facade tying manifest, stash, installer and environment together."""

from __future__ import annotations

import shutil
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from pindeps.config import Config, load_config
from pindeps.environment import (
    INPUT_DIRNAME,
    OUTPUT_DIRNAME,
    BuildBackend,
    BuildEnvironmentDescriptor,
    CommandSpec,
    ExitStatus,
    backend_for,
    describe,
    run,
)
from pindeps.errors import StashError, ValidationError
from pindeps.installer import InstallOptions, Installer
from pindeps.lockfile import LOCKFILE_FILENAME, build_lockfile, write_lockfile
from pindeps.manifest import (
    MANIFEST_FILENAME,
    Manifest,
    Published,
    VersionRef,
    init_manifest,
    load,
    validate,
    without_dependency,
    write_manifest,
)
from pindeps.observability import StructuredLogger
from pindeps.resolver import declare_overrides, parse_override, resolve
from pindeps.stash import Stash, StashEntry
from pindeps.status import DriftEntry, diff, format_drift, stashed_dependencies
from pindeps.store import ArtifactStore, HttpArtifactStore, fetch_published, pack_tarball
from pindeps.tree import InstalledTree, read_installed_tree

STASH_DIRNAME = "stash"
DEFAULT_SHELL = ("/bin/bash",)


@dataclass(slots=True)
class Workspace:
    """A component checkout: ``manifest.json`` plus its ``INPUT`` and ``OUTPUT`` trees."""

    root: Path = field(default_factory=lambda: Path("."))
    config: Config = field(default_factory=load_config)
    store: ArtifactStore | None = None
    backend: BuildBackend | None = None
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    stash_store: Stash = field(init=False, repr=False)
    installer: Installer = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        if self.store is None:
            self.store = HttpArtifactStore(self.config.store_url)
        if self.backend is None:
            self.backend = backend_for(self.config)
        self.stash_store = Stash(self.config.cache_dir / STASH_DIRNAME, logger=self.logger)
        self.installer = Installer(
            store=self.store,
            stash=self.stash_store,
            config=self.config,
            logger=self.logger,
        )

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_FILENAME

    @property
    def input_dir(self) -> Path:
        return self.root / INPUT_DIRNAME

    @property
    def output_dir(self) -> Path:
        return self.root / OUTPUT_DIRNAME

    def manifest(self) -> Manifest:
        return validate(load(self.manifest_path))

    def init(self, name: str, environment: str | None = None, *, force: bool = False) -> Manifest:
        if self.manifest_path.exists() and not force:
            raise ValidationError(
                "Manifest already exists.",
                hint="Pass --force to overwrite it.",
                context={"path": str(self.manifest_path)},
            )
        manifest = init_manifest(name, environment)
        self.root.mkdir(parents=True, exist_ok=True)
        write_manifest(manifest, self.manifest_path)
        return manifest

    def install(
        self,
        overrides: Mapping[str, VersionRef] | None = None,
        *,
        dev: bool = False,
        save: bool = False,
        save_dev: bool = False,
        force: bool = False,
    ) -> InstalledTree:
        """Install the manifest's pins, or only the given overrides when any are passed.

        With ``save``/``save_dev`` an override may name a dependency the
        manifest does not declare yet; it is added when the install succeeds.
        """
        manifest = self.manifest()
        requested = dict(overrides or {})
        if save or save_dev:
            manifest = declare_overrides(manifest, requested, is_dev=save_dev)
        plan = resolve(
            manifest,
            requested,
            include_dev=dev or save_dev,
            only_overrides=bool(requested),
        )
        options = InstallOptions(
            save=save,
            save_dev=save_dev,
            force=force,
            manifest_path=self.manifest_path,
        )
        return self.installer.execute(plan, self.input_dir, options)

    def remove(
        self,
        names: Iterable[str],
        *,
        save: bool = False,
        save_dev: bool = False,
    ) -> tuple[str, ...]:
        if save and save_dev:
            raise ValidationError("Choose only one of --save and --save-dev.")
        selected = tuple(names)
        if save or save_dev:
            manifest = load(self.manifest_path)
            for name in selected:
                manifest = without_dependency(manifest, name, save_dev)
            write_manifest(manifest, self.manifest_path)
        return self.installer.remove(selected, self.input_dir)

    def stash(self, label: str) -> StashEntry:
        manifest = self.manifest()
        if not self.output_dir.is_dir() or not any(self.output_dir.iterdir()):
            raise StashError(
                "No build found in OUTPUT.",
                hint="Run `pindeps build` before stashing.",
                context={"component": manifest.name, "path": str(self.output_dir)},
            )
        return self.stash_store.put(
            manifest.name,
            label,
            self.output_dir,
            source=str(self.root.resolve()),
        )

    def export(self, spec: str, output_dir: str | Path | None = None) -> Path:
        """Write ``<name>.tar.gz`` for ``name=version`` or ``name=label`` into ``output_dir``.

        Published versions are copied from the verified artifact cache; stashed
        builds are packed from the stash. No manifest is needed.
        """
        name, ref = parse_override(spec)
        destination = Path(output_dir or ".") / f"{name}.tar.gz"
        if isinstance(ref, Published):
            tarball = fetch_published(
                self.store,
                name,
                ref.version,
                cache_dir=self.config.cache_dir,
                timeout=self.config.fetch_timeout,
                retries=self.config.fetch_retries,
                retry_delay=self.config.retry_delay,
                require_integrity=self.config.require_integrity,
                logger=self.logger,
            )
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(tarball, destination)
        else:
            entry = self.stash_store.entry(name, ref.label)
            pack_tarball(entry.path, destination)
        self.logger.log(
            operation="export",
            phase="export",
            dependency=name,
            message=f"Exported {spec} to {destination}",
        )
        return destination

    def installed(self) -> InstalledTree:
        return read_installed_tree(self.input_dir)

    def status(self, *, include_dev: bool = True) -> tuple[DriftEntry, ...]:
        return diff(self.manifest(), self.installed(), include_dev=include_dev)

    def descriptor(self) -> BuildEnvironmentDescriptor:
        return describe(self.manifest(), self.config, self.root)

    def build(self, *, version: str | None = None) -> ExitStatus:
        manifest = self.manifest()
        descriptor = describe(manifest, self.config, self.root)
        self._warn_on_drift(manifest)
        status = self._run(descriptor, (self.config.build_script, manifest.name))
        if status.ok:
            lockfile = build_lockfile(manifest, descriptor, self.installed(), version=version)
            write_lockfile(lockfile, self.output_dir / LOCKFILE_FILENAME)
        return status

    def test(self) -> ExitStatus:
        manifest = self.manifest()
        descriptor = describe(manifest, self.config, self.root)
        self._warn_on_drift(manifest, include_dev=True)
        return self._run(descriptor, (self.config.build_script, manifest.name, "test"))

    def shell(self, argv: Sequence[str] | None = None) -> ExitStatus:
        descriptor = self.descriptor()
        return self._run(descriptor, tuple(argv or DEFAULT_SHELL), interactive=True)

    def _run(
        self,
        descriptor: BuildEnvironmentDescriptor,
        argv: tuple[str, ...],
        *,
        interactive: bool = False,
    ) -> ExitStatus:
        backend = self.backend or backend_for(self.config)
        command = CommandSpec(argv=argv, interactive=interactive)
        return run(descriptor, command, backend=backend, logger=self.logger)

    def _warn_on_drift(self, manifest: Manifest, *, include_dev: bool = False) -> None:
        tree = self.installed()
        for line in format_drift(diff(manifest, tree, include_dev=include_dev)):
            self.logger.log(
                operation="status",
                phase="drift",
                component=manifest.name,
                level="warning",
                message=line,
            )
        for name in stashed_dependencies(tree):
            self.logger.log(
                operation="status",
                phase="drift",
                component=manifest.name,
                dependency=name,
                level="warning",
                message=f"{name} is installed from the stash and cannot be reproduced by CI",
            )
