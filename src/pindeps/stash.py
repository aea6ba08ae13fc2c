"""Local artifact cache ("stash") of unpublished build outputs.

Entries are keyed by ``(component, label)``. Each put copies the build output
into a private directory under ``<root>/<component>/.entries/`` and then
publishes it by atomically replacing the ``<root>/<component>/<label>``
symlink, so a reader resolves either the previous entry or the new one, never
a partially written tree. Superseded content stays under ``.entries/`` so a
path handed out by an earlier ``get`` remains readable; entries are
user-managed and never expire.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from pindeps.errors import IntegrityCheckFailedError, StashEntryNotFoundError, StashError
from pindeps.manifest import NAME_PATTERN, VERSION_PATTERN
from pindeps.observability import StructuredLogger
from pindeps.tree import tree_digest

ENTRIES_DIRNAME = ".entries"
CONTENT_DIRNAME = "content"
METADATA_FILENAME = "stash.json"


@dataclass(frozen=True, slots=True)
class StashEntry:
    component: str
    label: str
    path: Path
    created_at: str
    source: str
    digest: str


class Stash:
    def __init__(self, root: str | Path, *, logger: StructuredLogger | None = None) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.logger = logger or StructuredLogger()

    def put(
        self,
        component: str,
        label: str,
        source_dir: str | Path,
        *,
        source: str | None = None,
    ) -> StashEntry:
        """Copy ``source_dir`` into the stash, replacing any entry for the key."""
        _validate_key(component, label)
        source_path = Path(source_dir)
        if not source_path.is_dir():
            raise StashError(
                "Nothing to stash: build output directory is missing.",
                hint="Run a build before stashing.",
                context={"component": component, "label": label, "path": str(source_path)},
            )

        component_dir = self.root / component
        entries_dir = component_dir / ENTRIES_DIRNAME
        entries_dir.mkdir(parents=True, exist_ok=True)

        entry_dir = Path(tempfile.mkdtemp(prefix=f"{label}.", dir=str(entries_dir)))
        link_tmp = component_dir / f".{label}.{uuid.uuid4().hex}.link"
        try:
            content_dir = entry_dir / CONTENT_DIRNAME
            shutil.copytree(source_path, content_dir, symlinks=True)
            metadata = {
                "component": component,
                "label": label,
                "created_at": datetime.now(UTC).isoformat(timespec="seconds"),
                "source": source or str(source_path.resolve()),
                "digest": tree_digest(content_dir),
            }
            (entry_dir / METADATA_FILENAME).write_text(
                json.dumps(metadata, indent=2, sort_keys=True) + "\n",
                encoding="utf-8",
            )

            link_path = component_dir / label
            os.symlink(Path(ENTRIES_DIRNAME) / entry_dir.name, link_tmp)
            os.replace(link_tmp, link_path)
        except BaseException:
            shutil.rmtree(entry_dir, ignore_errors=True)
            if link_tmp.is_symlink():
                link_tmp.unlink()
            raise

        self.logger.log(
            operation="stash",
            phase="put",
            component=component,
            message=f"Stashed {component} under label {label}",
            extra={"digest": metadata["digest"]},
        )
        return self._entry_from(entry_dir, component=component, label=label)

    def get(self, component: str, label: str) -> Path:
        """Return the content directory for a stashed entry without copying it."""
        entry_dir = self._resolve(component, label)
        return entry_dir / CONTENT_DIRNAME

    def entry(self, component: str, label: str) -> StashEntry:
        entry_dir = self._resolve(component, label)
        return self._entry_from(entry_dir, component=component, label=label)

    def list(self, component: str) -> tuple[str, ...]:
        component_dir = self.root / component
        if not component_dir.is_dir():
            return ()
        labels = [
            item.name
            for item in component_dir.iterdir()
            if item.is_symlink() and not item.name.startswith(".")
        ]
        return tuple(sorted(labels))

    def _resolve(self, component: str, label: str) -> Path:
        link_path = self.root / component / label
        entry_dir = _link_target(link_path)
        if entry_dir is None or not (entry_dir / CONTENT_DIRNAME).is_dir():
            raise StashEntryNotFoundError(
                f"No stashed artifact `{component}={label}` found.",
                hint=f"Stash a build with `pindeps stash {label}` in the {component} checkout.",
                context={"name": component, "label": label, "root": str(self.root)},
            )
        return entry_dir

    def _entry_from(self, entry_dir: Path, *, component: str, label: str) -> StashEntry:
        metadata_path = entry_dir / METADATA_FILENAME
        try:
            metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError) as exc:
            raise IntegrityCheckFailedError(
                f"Stash metadata for `{component}={label}` is missing or corrupt.",
                hint="Re-stash the build output.",
                context={"name": component, "label": label, "path": str(metadata_path)},
            ) from exc
        if not isinstance(metadata, dict) or not isinstance(metadata.get("digest"), str):
            raise IntegrityCheckFailedError(
                f"Stash metadata for `{component}={label}` has invalid structure.",
                hint="Re-stash the build output.",
                context={"name": component, "label": label, "path": str(metadata_path)},
            )
        return StashEntry(
            component=component,
            label=label,
            path=entry_dir / CONTENT_DIRNAME,
            created_at=str(metadata.get("created_at", "")),
            source=str(metadata.get("source", "")),
            digest=metadata["digest"],
        )


def validate_label(label: str) -> str:
    if (
        not label
        or label.startswith(".")
        or "/" in label
        or "=" in label
        or VERSION_PATTERN.fullmatch(label)
    ):
        raise StashError(
            f"Invalid stash label `{label}`.",
            hint="Labels must not look like a published version or contain `/` or `=`.",
            context={"label": label},
        )
    return label


def _validate_key(component: str, label: str) -> None:
    if not NAME_PATTERN.fullmatch(component):
        raise StashError("Invalid component name.", context={"component": component})
    validate_label(label)


def _link_target(link_path: Path) -> Path | None:
    if not link_path.is_symlink():
        return None
    return link_path.parent / os.readlink(link_path)
