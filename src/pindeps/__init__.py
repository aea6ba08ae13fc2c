"""Public package entrypoint for the pinned component dependency manager."""

__version__ = "0.1.0"

from .config import Config, load_config  # noqa: E402
from .environment import (  # noqa: E402
    BuildEnvironmentDescriptor,
    CommandSpec,
    DockerBackend,
    ExitStatus,
    HostBackend,
    MountSpec,
    describe,
    run,
)
from .errors import (  # noqa: E402
    ConfigError,
    DuplicateDependencyNameError,
    EnvironmentUnavailableError,
    FetchFailedError,
    IncompleteInstallError,
    IntegrityCheckFailedError,
    InvalidEnvironmentNameError,
    LaunchFailedError,
    LockfileError,
    MalformedManifestError,
    PindepsError,
    StashEntryNotFoundError,
    StashError,
    UnknownOverrideTargetError,
    ValidationError,
)
from .installer import InstallOptions, Installer  # noqa: E402
from .manifest import Manifest, Published, Stashed, VersionRef  # noqa: E402
from .resolver import InstallPlan, PlanEntry, resolve  # noqa: E402
from .stash import Stash, StashEntry  # noqa: E402
from .status import Extra, Mismatched, Missing, diff  # noqa: E402
from .store import HttpArtifactStore  # noqa: E402
from .tree import InstalledTree, read_installed_tree  # noqa: E402
from .workspace import Workspace  # noqa: E402

__all__ = [
    "BuildEnvironmentDescriptor",
    "CommandSpec",
    "Config",
    "ConfigError",
    "DockerBackend",
    "DuplicateDependencyNameError",
    "EnvironmentUnavailableError",
    "ExitStatus",
    "Extra",
    "FetchFailedError",
    "HostBackend",
    "HttpArtifactStore",
    "IncompleteInstallError",
    "InstallOptions",
    "InstallPlan",
    "InstalledTree",
    "Installer",
    "IntegrityCheckFailedError",
    "InvalidEnvironmentNameError",
    "LaunchFailedError",
    "LockfileError",
    "MalformedManifestError",
    "Manifest",
    "Mismatched",
    "Missing",
    "MountSpec",
    "PindepsError",
    "PlanEntry",
    "Published",
    "Stash",
    "StashEntry",
    "StashEntryNotFoundError",
    "StashError",
    "Stashed",
    "UnknownOverrideTargetError",
    "ValidationError",
    "VersionRef",
    "Workspace",
    "__version__",
    "describe",
    "diff",
    "load_config",
    "read_installed_tree",
    "resolve",
    "run",
]
