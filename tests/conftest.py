"""Shared test fixtures."""

from __future__ import annotations

import hashlib
import io
import tarfile
from dataclasses import dataclass
from pathlib import Path

import pytest

from pindeps.config import Config
from pindeps.manifest import Manifest, Published, write_manifest


@dataclass(slots=True)
class PublishedStore:
    """A ``file://`` artifact store laid out the way the remote store is."""

    root: Path

    @property
    def url(self) -> str:
        return self.root.as_uri()

    def publish(
        self,
        name: str,
        version: str,
        files: dict[str, str],
        *,
        digest: str | None = "auto",
    ) -> Path:
        entry = self.root / name / version
        entry.mkdir(parents=True, exist_ok=True)
        tarball = entry / f"{name}.tar.gz"
        tarball.write_bytes(make_tarball(files))
        if digest == "auto":
            digest = hashlib.sha256(tarball.read_bytes()).hexdigest()
        if digest is not None:
            (entry / f"{name}.tar.gz.sha256").write_text(
                f"{digest}  {name}.tar.gz\n", encoding="utf-8"
            )
        return tarball


def make_tarball(files: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for rel, content in sorted(files.items()):
            data = content.encode("utf-8")
            info = tarfile.TarInfo(rel)
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def snapshot(root: Path) -> dict[str, bytes]:
    """Relative path -> bytes for every file under ``root``."""
    if not root.exists():
        return {}
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "pindeps-home"
    monkeypatch.setenv("PINDEPS_HOME", str(home))
    monkeypatch.delenv("PINDEPS_CACHE", raising=False)
    return home


@pytest.fixture
def store(tmp_path: Path) -> PublishedStore:
    root = tmp_path / "store"
    root.mkdir()
    return PublishedStore(root=root)


@pytest.fixture
def config(tmp_path: Path, store: PublishedStore) -> Config:
    return Config(
        store_url=store.url,
        cache_dir=tmp_path / "cache",
        environments={"centos": "pindeps/centos_build:7"},
        backend="host",
        fetch_timeout=5.0,
        fetch_retries=2,
        retry_delay=0.0,
    )


@pytest.fixture
def component_dir(tmp_path: Path) -> Path:
    root = tmp_path / "component"
    root.mkdir()
    manifest = Manifest(
        name="edonus",
        dependencies={"ciscossl": Published("5"), "libwebsockets": Published("1")},
        dev_dependencies={"gtest": Published("3")},
        environment="centos",
    )
    write_manifest(manifest, root / "manifest.json")
    return root
