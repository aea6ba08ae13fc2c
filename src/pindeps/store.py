"""Remote artifact store access with integrity checks and bounded retries.

Published versions are immutable, so a verified tarball is kept in the
``globals`` area of the cache root and reused on later installs without
touching the network.
"""

from __future__ import annotations

import hashlib
import http.client
import os
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from pindeps.errors import FetchFailedError, IntegrityCheckFailedError
from pindeps.observability import StructuredLogger

GLOBALS_DIRNAME = "globals"


class TransientFetchError(Exception):
    """Transport failure worth retrying (timeouts, resets, 5xx)."""


@dataclass(frozen=True, slots=True)
class FetchedArtifact:
    payload: bytes
    digest: str | None


class ArtifactStore(Protocol):
    def artifact_url(self, name: str, version: str) -> str:
        """Return the location of a published artifact."""

    def fetch(self, name: str, version: str, *, timeout: float) -> FetchedArtifact:
        """Download a published artifact and its digest, if the store has one."""


@dataclass(frozen=True, slots=True)
class HttpArtifactStore:
    """Store laid out as ``<base>/<name>/<version>/<name>.tar.gz`` (+ ``.sha256``).

    Any scheme ``urlopen`` understands works, including ``file://`` mirrors.
    """

    base_url: str

    def artifact_url(self, name: str, version: str) -> str:
        return f"{self.base_url.rstrip('/')}/{name}/{version}/{name}.tar.gz"

    def fetch(self, name: str, version: str, *, timeout: float) -> FetchedArtifact:
        url = self.artifact_url(name, version)
        payload = _read(url, timeout=timeout, name=name, version=version)
        try:
            digest_text = _read(f"{url}.sha256", timeout=timeout, name=name, version=version)
        except FetchFailedError:
            return FetchedArtifact(payload=payload, digest=None)
        digest = digest_text.decode("utf-8", errors="replace").split()
        return FetchedArtifact(payload=payload, digest=digest[0].lower() if digest else None)


def fetch_published(
    store: ArtifactStore,
    name: str,
    version: str,
    *,
    cache_dir: str | Path,
    timeout: float,
    retries: int,
    retry_delay: float = 0.0,
    require_integrity: bool = False,
    logger: StructuredLogger | None = None,
) -> Path:
    """Return a verified tarball for ``name`` at ``version``."""
    entry_dir = Path(cache_dir) / GLOBALS_DIRNAME / name / version
    tarball = entry_dir / f"{name}.tar.gz"
    digest_path = entry_dir / f"{name}.tar.gz.sha256"

    if tarball.exists() and digest_path.exists():
        recorded = digest_path.read_text(encoding="utf-8").strip()
        _assert_digest(tarball.read_bytes(), expected=recorded, name=name, version=version)
        return tarball

    artifact = _fetch_with_retries(
        store,
        name,
        version,
        timeout=timeout,
        retries=retries,
        retry_delay=retry_delay,
        logger=logger,
    )
    if artifact.digest is None:
        if require_integrity:
            raise IntegrityCheckFailedError(
                f"Store provided no digest for `{name}` version {version}.",
                hint="Publish a .sha256 alongside the artifact or relax require_integrity.",
                context={"name": name, "version": version},
            )
        digest = hashlib.sha256(artifact.payload).hexdigest()
    else:
        digest = _assert_digest(
            artifact.payload, expected=artifact.digest, name=name, version=version
        )

    entry_dir.mkdir(parents=True, exist_ok=True)
    _atomic_write(tarball, artifact.payload)
    # the digest file marks the entry complete, so it lands last
    _atomic_write(digest_path, (digest + "\n").encode("utf-8"))
    return tarball


def extract_tarball(tarball: Path, destination: Path, *, name: str, version: str) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(tarball, "r:*") as archive:
            archive.extractall(destination, filter="data")
    except (tarfile.TarError, EOFError, OSError) as exc:
        raise IntegrityCheckFailedError(
            f"Artifact for `{name}` version {version} could not be unpacked.",
            hint="The artifact is truncated or corrupt; clear it from the cache and refetch.",
            context={"name": name, "version": version, "path": str(tarball), "error": str(exc)},
        ) from exc


def pack_tarball(source_dir: Path, destination: Path) -> Path:
    """Write ``source_dir`` as a gzipped tarball at ``destination``, atomically."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    temp_path = destination.with_name(f".{destination.name}.{os.getpid()}.tmp")
    try:
        with tarfile.open(temp_path, "w:gz") as archive:
            for path in sorted(source_dir.rglob("*")):
                archive.add(path, arcname=path.relative_to(source_dir).as_posix(), recursive=False)
        os.replace(temp_path, destination)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    return destination


def _fetch_with_retries(
    store: ArtifactStore,
    name: str,
    version: str,
    *,
    timeout: float,
    retries: int,
    retry_delay: float,
    logger: StructuredLogger | None,
) -> FetchedArtifact:
    last_error: TransientFetchError | None = None
    attempts = max(retries, 1)
    for attempt in range(1, attempts + 1):
        try:
            return store.fetch(name, version, timeout=timeout)
        except TransientFetchError as exc:
            last_error = exc
            if logger is not None:
                logger.log(
                    operation="install",
                    phase="retry",
                    dependency=name,
                    level="warning",
                    message=f"Fetch of {name} {version} failed (attempt {attempt}/{attempts}): {exc}",
                )
            if attempt < attempts and retry_delay > 0:
                time.sleep(retry_delay * attempt)
    raise FetchFailedError(
        f"Failed to fetch `{name}` version {version}: retries exhausted after {attempts} attempts.",
        hint="Check connectivity to the artifact store and retry.",
        context={
            "name": name,
            "version": version,
            "attempts": str(attempts),
            "url": store.artifact_url(name, version),
            "error": str(last_error),
        },
    )


def _read(url: str, *, timeout: float, name: str, version: str) -> bytes:
    try:
        with urlopen(url, timeout=timeout) as response:  # noqa: S310 - digest verified by caller
            return response.read()
    except HTTPError as exc:
        if exc.code >= 500 or exc.code == 429:
            raise TransientFetchError(f"HTTP {exc.code} from {url}") from exc
        raise FetchFailedError(
            f"Artifact store rejected request for `{name}` version {version}.",
            hint="Check that the component and version exist in the artifact store.",
            context={"name": name, "version": version, "url": url, "status": str(exc.code)},
        ) from exc
    except URLError as exc:
        if isinstance(exc.reason, (FileNotFoundError, IsADirectoryError, NotADirectoryError)):
            raise FetchFailedError(
                f"Artifact for `{name}` version {version} does not exist.",
                hint="Check that the component and version exist in the artifact store.",
                context={"name": name, "version": version, "url": url},
            ) from exc
        raise TransientFetchError(f"{exc.reason} ({url})") from exc
    except (TimeoutError, ConnectionError, http.client.HTTPException) as exc:
        raise TransientFetchError(f"{exc} ({url})") from exc


def _assert_digest(payload: bytes, *, expected: str, name: str, version: str) -> str:
    actual = hashlib.sha256(payload).hexdigest()
    if actual != expected:
        raise IntegrityCheckFailedError(
            f"Checksum mismatch for `{name}` version {version}.",
            hint="The transfer or cached copy is corrupt; it was not installed.",
            context={"name": name, "version": version, "expected": expected, "actual": actual},
        )
    return actual


def _atomic_write(path: Path, payload: bytes) -> None:
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    temp_path.write_bytes(payload)
    os.replace(temp_path, path)
