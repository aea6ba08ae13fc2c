import os
from pathlib import Path

import pytest

from pindeps.config import Config
from pindeps.errors import (
    IncompleteInstallError,
    IntegrityCheckFailedError,
    StashEntryNotFoundError,
    ValidationError,
)
from pindeps.installer import InstallOptions, Installer
from pindeps.manifest import Published, Stashed, load
from pindeps.observability import StructuredLogger
from pindeps.resolver import InstallPlan, PlanEntry, resolve
from pindeps.stash import Stash
from pindeps.store import HttpArtifactStore

from conftest import PublishedStore, snapshot


@pytest.fixture
def installer(config: Config) -> Installer:
    return Installer(
        store=HttpArtifactStore(config.store_url),
        stash=Stash(config.cache_dir / "stash"),
        config=config,
        logger=StructuredLogger(),
    )


def _plan(**pins: Published | Stashed) -> InstallPlan:
    return InstallPlan(entries=tuple(PlanEntry(name, ref) for name, ref in sorted(pins.items())))


def test_execute_installs_every_plan_entry(
    installer: Installer, store: PublishedStore, tmp_path: Path
) -> None:
    store.publish("ciscossl", "5", {"lib/libssl.a": "ssl5"})
    store.publish("zlib", "1", {"lib/libz.a": "z1"})
    input_dir = tmp_path / "INPUT"

    tree = installer.execute(_plan(ciscossl=Published("5"), zlib=Published("1")), input_dir)

    assert tree.names() == ("ciscossl", "zlib")
    assert tree.ref_for("ciscossl") == Published("5")
    assert (input_dir / "zlib" / "lib" / "libz.a").read_text(encoding="utf-8") == "z1"
    assert [path.name for path in tmp_path.iterdir() if "staging" in path.name] == []


def test_failure_mid_plan_leaves_tree_and_manifest_untouched(
    installer: Installer, store: PublishedStore, component_dir: Path
) -> None:
    store.publish("ciscossl", "5", {"lib/libssl.a": "ssl5"})
    store.publish("libwebsockets", "1", {"lib/libwebsockets.a": "ws1"})
    input_dir = component_dir / "INPUT"
    installer.execute(_plan(ciscossl=Published("5"), libwebsockets=Published("1")), input_dir)
    before = snapshot(input_dir)
    manifest_before = (component_dir / "manifest.json").read_bytes()

    store.publish("ciscossl", "6", {"lib/libssl.a": "ssl6"})
    store.publish("libwebsockets", "2", {"lib/libwebsockets.a": "ws2"}, digest="0" * 64)
    options = InstallOptions(save=True, manifest_path=component_dir / "manifest.json")

    with pytest.raises(IntegrityCheckFailedError) as excinfo:
        installer.execute(
            _plan(ciscossl=Published("6"), libwebsockets=Published("2")), input_dir, options
        )

    assert excinfo.value.context["name"] == "libwebsockets"
    assert excinfo.value.context["version"] == "2"
    assert snapshot(input_dir) == before
    assert (component_dir / "manifest.json").read_bytes() == manifest_before


def test_save_updates_manifest_only_on_success(
    installer: Installer, store: PublishedStore, component_dir: Path
) -> None:
    store.publish("ciscossl", "6", {"lib/libssl.a": "ssl6"})
    manifest_path = component_dir / "manifest.json"
    plan = resolve(load(manifest_path), {"ciscossl": Published("6")}, only_overrides=True)

    tree = installer.execute(
        plan, component_dir / "INPUT", InstallOptions(save=True, manifest_path=manifest_path)
    )

    manifest = load(manifest_path)
    assert tree.ref_for("ciscossl") == Published("6")
    assert manifest.dependencies["ciscossl"] == Published("6")
    assert manifest.dependencies["libwebsockets"] == Published("1")
    assert installer.logger.records_for_phase("save")


def test_names_outside_plan_are_untouched(
    installer: Installer, store: PublishedStore, tmp_path: Path
) -> None:
    store.publish("zlib", "1", {"lib/libz.a": "z1"})
    store.publish("ciscossl", "6", {"lib/libssl.a": "ssl6"})
    input_dir = tmp_path / "INPUT"
    installer.execute(_plan(zlib=Published("1")), input_dir)
    zlib_before = snapshot(input_dir / "zlib")

    installer.execute(_plan(ciscossl=Published("6")), input_dir)

    assert snapshot(input_dir / "zlib") == zlib_before


def test_installs_stashed_build(installer: Installer, tmp_path: Path) -> None:
    output = tmp_path / "ciscossl-OUTPUT"
    (output / "lib").mkdir(parents=True)
    (output / "lib" / "libssl.a").write_text("asan build", encoding="utf-8")
    installer.stash.put("ciscossl", "asan", output)
    input_dir = tmp_path / "INPUT"

    tree = installer.execute(_plan(ciscossl=Stashed("asan")), input_dir)

    assert tree.ref_for("ciscossl") == Stashed("asan")
    assert (input_dir / "ciscossl" / "lib" / "libssl.a").read_text(encoding="utf-8") == (
        "asan build"
    )


def test_missing_stash_entry_aborts_install(
    installer: Installer, store: PublishedStore, tmp_path: Path
) -> None:
    store.publish("zlib", "1", {"lib/libz.a": "z1"})
    input_dir = tmp_path / "INPUT"

    with pytest.raises(StashEntryNotFoundError):
        installer.execute(_plan(ciscossl=Stashed("asan"), zlib=Published("1")), input_dir)

    assert snapshot(input_dir) == {}


def test_tampered_stash_entry_is_rejected(installer: Installer, tmp_path: Path) -> None:
    output = tmp_path / "OUTPUT"
    output.mkdir()
    (output / "lib.a").write_text("original", encoding="utf-8")
    entry = installer.stash.put("ciscossl", "asan", output)
    (entry.path / "lib.a").write_text("tampered", encoding="utf-8")

    with pytest.raises(IntegrityCheckFailedError) as excinfo:
        installer.execute(_plan(ciscossl=Stashed("asan")), tmp_path / "INPUT")

    assert excinfo.value.context["label"] == "asan"


def test_matching_published_install_is_reused(
    installer: Installer, store: PublishedStore, tmp_path: Path
) -> None:
    store.publish("zlib", "1", {"lib/libz.a": "z1"})
    input_dir = tmp_path / "INPUT"
    installer.execute(_plan(zlib=Published("1")), input_dir)

    installer.execute(_plan(zlib=Published("1")), input_dir)
    installer.execute(_plan(zlib=Published("1")), input_dir, InstallOptions(force=True))

    assert len(installer.logger.records_for_phase("reuse")) == 1
    assert len(installer.logger.records_for_phase("commit")) == 2


def test_locally_modified_install_is_replaced(
    installer: Installer, store: PublishedStore, tmp_path: Path
) -> None:
    store.publish("zlib", "1", {"lib/libz.a": "z1"})
    input_dir = tmp_path / "INPUT"
    installer.execute(_plan(zlib=Published("1")), input_dir)
    (input_dir / "zlib" / "lib" / "libz.a").write_text("edited", encoding="utf-8")

    installer.execute(_plan(zlib=Published("1")), input_dir)

    assert (input_dir / "zlib" / "lib" / "libz.a").read_text(encoding="utf-8") == "z1"


def test_commit_failure_restores_previous_tree(
    installer: Installer,
    store: PublishedStore,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    for version in ("1", "2"):
        store.publish("ciscossl", version, {"lib/libssl.a": f"ssl{version}"})
        store.publish("zlib", version, {"lib/libz.a": f"z{version}"})
    input_dir = tmp_path / "INPUT"
    installer.execute(_plan(ciscossl=Published("1"), zlib=Published("1")), input_dir)
    before = snapshot(input_dir)

    real_rename = os.rename

    def failing_rename(src, dst):
        if Path(dst) == input_dir / "zlib" and ".previous" not in Path(src).parts:
            raise OSError("device busy")
        return real_rename(src, dst)

    monkeypatch.setattr("pindeps.installer.os.rename", failing_rename)

    with pytest.raises(IncompleteInstallError) as excinfo:
        installer.execute(_plan(ciscossl=Published("2"), zlib=Published("2")), input_dir)

    assert excinfo.value.context["name"] == "zlib"
    assert snapshot(input_dir) == before


def test_save_and_save_dev_are_exclusive(installer: Installer, tmp_path: Path) -> None:
    options = InstallOptions(save=True, save_dev=True, manifest_path=tmp_path / "manifest.json")

    with pytest.raises(ValidationError):
        installer.execute(_plan(), tmp_path / "INPUT", options)


def test_remove_deletes_installed_dependencies(
    installer: Installer, store: PublishedStore, tmp_path: Path
) -> None:
    store.publish("zlib", "1", {"lib/libz.a": "z1"})
    input_dir = tmp_path / "INPUT"
    installer.execute(_plan(zlib=Published("1")), input_dir)

    assert installer.remove(["zlib", "absent"], input_dir) == ("zlib",)
    assert not (input_dir / "zlib").exists()
