import json
import os
import tarfile
from pathlib import Path

import pytest

from pindeps.config import Config
from pindeps.errors import (
    IntegrityCheckFailedError,
    StashEntryNotFoundError,
    StashError,
    UnknownOverrideTargetError,
    ValidationError,
)
from pindeps.lockfile import read_lockfile
from pindeps.manifest import Published, Stashed, load, write_manifest
from pindeps.status import Missing
from pindeps.workspace import Workspace

from conftest import PublishedStore, snapshot

BUILD_SCRIPT = """#!/bin/sh
set -e
mkdir -p "$PINDEPS_OUTPUT/lib"
echo "$1 built" > "$PINDEPS_OUTPUT/lib/lib$1.a"
if [ "$2" = "test" ]; then
    exit 4
fi
"""


def _write_build_script(root: Path, body: str = BUILD_SCRIPT) -> None:
    script = root / "BUILD"
    script.write_text(body, encoding="utf-8")
    os.chmod(script, 0o755)


@pytest.fixture
def workspace(component_dir: Path, config: Config) -> Workspace:
    return Workspace(root=component_dir, config=config)


def _publish_pins(store: PublishedStore) -> None:
    store.publish("ciscossl", "5", {"lib/libssl.a": "ssl5"})
    store.publish("libwebsockets", "1", {"lib/libwebsockets.a": "ws1"})
    store.publish("gtest", "3", {"lib/libgtest.a": "gtest3"})


def test_install_all_pins(workspace: Workspace, store: PublishedStore) -> None:
    _publish_pins(store)

    tree = workspace.install()

    assert tree.names() == ("ciscossl", "libwebsockets")
    assert workspace.status(include_dev=False) == ()
    assert workspace.status() == (Missing(name="gtest", declared=Published("3")),)


def test_install_dev_includes_dev_dependencies(workspace: Workspace, store: PublishedStore) -> None:
    _publish_pins(store)

    tree = workspace.install(dev=True)

    assert tree.names() == ("ciscossl", "gtest", "libwebsockets")
    assert workspace.status() == ()


def test_upgrade_with_save_rewrites_only_that_pin(
    workspace: Workspace, store: PublishedStore
) -> None:
    _publish_pins(store)
    workspace.install()
    store.publish("ciscossl", "6", {"lib/libssl.a": "ssl6"})

    tree = workspace.install({"ciscossl": Published("6")}, save=True)

    manifest = workspace.manifest()
    assert tree.ref_for("ciscossl") == Published("6")
    assert tree.ref_for("libwebsockets") == Published("1")
    assert manifest.dependencies == {
        "ciscossl": Published("6"),
        "libwebsockets": Published("1"),
    }
    assert manifest.dev_dependencies == {"gtest": Published("3")}


def test_save_dev_declares_new_dependency(workspace: Workspace, store: PublishedStore) -> None:
    store.publish("benchmark", "2", {"lib/libbenchmark.a": "b2"})

    workspace.install({"benchmark": Published("2")}, save_dev=True)

    assert workspace.manifest().dev_dependencies["benchmark"] == Published("2")
    assert workspace.installed().ref_for("benchmark") == Published("2")


def test_undeclared_override_without_save_fails(workspace: Workspace) -> None:
    with pytest.raises(UnknownOverrideTargetError):
        workspace.install({"benchmark": Published("2")})

    assert not workspace.input_dir.exists()


def test_integrity_failure_leaves_checkout_untouched(
    workspace: Workspace, store: PublishedStore
) -> None:
    _publish_pins(store)
    workspace.install()
    before = snapshot(workspace.input_dir)
    manifest_before = workspace.manifest_path.read_bytes()
    store.publish("libwebsockets", "2", {"lib/libwebsockets.a": "ws2"}, digest="0" * 64)

    with pytest.raises(IntegrityCheckFailedError) as excinfo:
        workspace.install({"libwebsockets": Published("2")}, save=True)

    assert excinfo.value.context["version"] == "2"
    assert snapshot(workspace.input_dir) == before
    assert workspace.manifest_path.read_bytes() == manifest_before


def test_stash_then_install_in_consumer(
    workspace: Workspace, config: Config, store: PublishedStore, tmp_path: Path
) -> None:
    producer_root = tmp_path / "ciscossl"
    producer = Workspace(root=producer_root, config=config)
    producer.init("ciscossl", "centos")
    _write_build_script(producer_root)
    assert producer.build().ok
    producer.stash("asan")

    _publish_pins(store)
    workspace.install()
    tree = workspace.install({"ciscossl": Stashed("asan")})

    assert tree.ref_for("ciscossl") == Stashed("asan")
    installed = workspace.input_dir / "ciscossl" / "lib" / "libciscossl.a"
    assert installed.read_text(encoding="utf-8") == "ciscossl built\n"
    assert (workspace.input_dir / "ciscossl" / "lockfile.json").exists()
    assert workspace.manifest().dependencies["ciscossl"] == Published("5")


def test_stash_without_build_output_fails(workspace: Workspace) -> None:
    with pytest.raises(StashError) as excinfo:
        workspace.stash("asan")

    assert excinfo.value.context["component"] == "edonus"


def test_clean_build_writes_lockfile_without_warnings(
    workspace: Workspace, store: PublishedStore
) -> None:
    _publish_pins(store)
    workspace.install()
    _write_build_script(workspace.root)

    status = workspace.build(version="7")

    lockfile = read_lockfile(workspace.output_dir / "lockfile.json")
    assert status.returncode == 0
    assert lockfile.version == "7"
    assert lockfile.environment == "centos"
    assert workspace.logger.records_for_phase("drift") == []


def test_build_failure_returns_exit_code_without_lockfile(workspace: Workspace) -> None:
    _write_build_script(workspace.root, "#!/bin/sh\nexit 2\n")

    status = workspace.build()

    assert status.returncode == 2
    assert not (workspace.output_dir / "lockfile.json").exists()
    warnings = workspace.logger.records_for_phase("drift")
    assert [record["message"].split()[0] for record in warnings] == ["missing", "missing"]


def test_test_runs_build_script_with_test_argument(workspace: Workspace) -> None:
    _write_build_script(workspace.root)

    assert workspace.test().returncode == 4


def test_shell_runs_given_command(workspace: Workspace) -> None:
    assert workspace.shell(["sh", "-c", "exit 9"]).returncode == 9


def test_init_refuses_to_overwrite(workspace: Workspace) -> None:
    with pytest.raises(ValidationError):
        workspace.init("edonus", "centos")

    assert workspace.init("edonus", "xenial", force=True).environment == "xenial"


def test_remove_with_save(workspace: Workspace, store: PublishedStore) -> None:
    _publish_pins(store)
    workspace.install()

    assert workspace.remove(["libwebsockets"], save=True) == ("libwebsockets",)
    assert "libwebsockets" not in workspace.manifest().dependencies
    assert workspace.installed().names() == ("ciscossl",)


def test_manifest_with_duplicate_pin_is_rejected(workspace: Workspace) -> None:
    manifest = load(workspace.manifest_path)
    payload = json.loads(workspace.manifest_path.read_text(encoding="utf-8"))
    payload["devDependencies"]["ciscossl"] = "5"
    workspace.manifest_path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(ValidationError):
        workspace.install()

    write_manifest(manifest, workspace.manifest_path)
    assert workspace.manifest() == manifest


def test_export_published_copies_verified_tarball(
    workspace: Workspace, store: PublishedStore, tmp_path: Path
) -> None:
    published = store.publish("ciscossl", "6", {"lib/libssl.a": "ssl6"})

    exported = workspace.export("ciscossl=6", tmp_path / "exports")

    assert exported == tmp_path / "exports" / "ciscossl.tar.gz"
    assert exported.read_bytes() == published.read_bytes()


def test_export_stashed_packs_stash_entry(workspace: Workspace, tmp_path: Path) -> None:
    output = tmp_path / "ssl-output"
    (output / "lib").mkdir(parents=True)
    (output / "lib" / "libssl.a").write_text("asan build", encoding="utf-8")
    workspace.stash_store.put("ciscossl", "asan", output)

    exported = workspace.export("ciscossl=asan", tmp_path / "exports")

    with tarfile.open(exported, "r:gz") as archive:
        assert sorted(archive.getnames()) == ["lib", "lib/libssl.a"]
        member = archive.extractfile("lib/libssl.a")
        assert member is not None
        assert member.read() == b"asan build"


def test_export_missing_stash_label_fails(workspace: Workspace, tmp_path: Path) -> None:
    with pytest.raises(StashEntryNotFoundError):
        workspace.export("ciscossl=asan", tmp_path / "exports")

    assert not (tmp_path / "exports" / "ciscossl.tar.gz").exists()
