"""Isolated build environments: descriptors, backends, and command execution.

The orchestrator is a transparent pass-through. It mounts the source tree,
the installed input tree and a scratch output area into the environment,
runs the requested command, and hands back the exit code untouched. A
non-zero exit is a normal result; only failing to launch is an error.
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from pindeps.config import Config
from pindeps.errors import EnvironmentUnavailableError, LaunchFailedError
from pindeps.manifest import Manifest, validate
from pindeps.observability import StructuredLogger

INPUT_DIRNAME = "INPUT"
OUTPUT_DIRNAME = "OUTPUT"
WORKSPACE_TARGET = "/workspace"

# docker run reports its own failures (daemon, bad flags, pull) as 125
DOCKER_RUN_FAILURE = 125
SIGINT_EXIT = 128 + signal.SIGINT


@dataclass(frozen=True, slots=True)
class MountSpec:
    source: Path
    target: str
    read_only: bool = False


@dataclass(frozen=True, slots=True)
class BuildEnvironmentDescriptor:
    environment: str
    image: str
    source_dir: Path
    input_dir: Path
    output_dir: Path
    mounts: tuple[MountSpec, ...]
    workdir: str = WORKSPACE_TARGET
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CommandSpec:
    argv: tuple[str, ...]
    interactive: bool = False
    capture: bool = False


@dataclass(frozen=True, slots=True)
class ExitStatus:
    returncode: int
    stdout: str | None = None
    stderr: str | None = None
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class BuildBackend(Protocol):
    name: str

    def mount_plan(self, descriptor: BuildEnvironmentDescriptor) -> tuple[MountSpec, ...]:
        """Return the ordered host/guest mount mapping for this descriptor."""

    def prepare(self, descriptor: BuildEnvironmentDescriptor) -> None:
        """Check prerequisites and create host-side mount sources."""

    def launch_argv(
        self, descriptor: BuildEnvironmentDescriptor, command: CommandSpec
    ) -> tuple[list[str], Path | None, dict[str, str] | None]:
        """Return argv, cwd and env used to start the command."""


def describe(
    manifest: Manifest,
    config: Config,
    component_dir: str | Path,
    *,
    env: Mapping[str, str] | None = None,
) -> BuildEnvironmentDescriptor:
    """Build the environment descriptor for a component checkout."""
    validate(manifest, require_environment=True)
    environment = manifest.environment or ""
    image = config.image_for(environment)
    if image is None:
        known = ", ".join(sorted(config.environments)) or "none"
        raise EnvironmentUnavailableError(
            f"Environment `{environment}` is not configured.",
            hint=f"Add it to `environments` in the pindeps config (known: {known}).",
            context={"component": manifest.name, "environment": environment},
        )
    source_dir = Path(component_dir).resolve()
    input_dir = source_dir / INPUT_DIRNAME
    output_dir = source_dir / OUTPUT_DIRNAME
    mounts = (
        MountSpec(source=source_dir, target=WORKSPACE_TARGET),
        MountSpec(source=input_dir, target=f"{WORKSPACE_TARGET}/{INPUT_DIRNAME}", read_only=True),
        MountSpec(source=output_dir, target=f"{WORKSPACE_TARGET}/{OUTPUT_DIRNAME}"),
    )
    return BuildEnvironmentDescriptor(
        environment=environment,
        image=image,
        source_dir=source_dir,
        input_dir=input_dir,
        output_dir=output_dir,
        mounts=mounts,
        env=dict(env or {}),
    )


@dataclass(slots=True)
class DockerBackend:
    """Runs commands in a throwaway container of the environment's image."""

    name: str = "docker"
    binary: str = "docker"
    extra_args: list[str] = field(default_factory=list)

    def mount_plan(self, descriptor: BuildEnvironmentDescriptor) -> tuple[MountSpec, ...]:
        # parents before children so nested mounts shadow correctly
        return tuple(sorted(descriptor.mounts, key=lambda mount: mount.target))

    def prepare(self, descriptor: BuildEnvironmentDescriptor) -> None:
        if shutil.which(self.binary) is None:
            raise LaunchFailedError(
                f"Container runtime `{self.binary}` not found in PATH.",
                hint="Install docker or set `backend` to `host` in the pindeps config.",
                context={"backend": self.name, "operation": "prepare"},
            )
        for mount in self.mount_plan(descriptor):
            mount.source.mkdir(parents=True, exist_ok=True)

    def launch_argv(
        self, descriptor: BuildEnvironmentDescriptor, command: CommandSpec
    ) -> tuple[list[str], Path | None, dict[str, str] | None]:
        argv = [self.binary, "run", "--rm"]
        if command.interactive:
            argv.append("-it")
        argv.extend(["--user", f"{os.getuid()}:{os.getgid()}"])
        for mount in self.mount_plan(descriptor):
            volume = f"{mount.source}:{mount.target}"
            if mount.read_only:
                volume += ":ro"
            argv.extend(["-v", volume])
        for key, value in sorted(descriptor.env.items()):
            argv.extend(["-e", f"{key}={value}"])
        argv.extend(["-w", descriptor.workdir, *self.extra_args, descriptor.image])
        argv.extend(command.argv)
        return argv, None, None


@dataclass(slots=True)
class HostBackend:
    """Runs commands directly on the host, without isolation.

    Meant for development and tests: the command runs in the source tree and
    finds the input and output trees through ``PINDEPS_INPUT`` and
    ``PINDEPS_OUTPUT``.
    """

    name: str = "host"

    def mount_plan(self, descriptor: BuildEnvironmentDescriptor) -> tuple[MountSpec, ...]:
        return tuple(sorted(descriptor.mounts, key=lambda mount: mount.target))

    def prepare(self, descriptor: BuildEnvironmentDescriptor) -> None:
        for mount in self.mount_plan(descriptor):
            mount.source.mkdir(parents=True, exist_ok=True)

    def launch_argv(
        self, descriptor: BuildEnvironmentDescriptor, command: CommandSpec
    ) -> tuple[list[str], Path | None, dict[str, str] | None]:
        env = dict(os.environ)
        env.update(descriptor.env)
        env["PINDEPS_ENVIRONMENT"] = descriptor.environment
        env["PINDEPS_INPUT"] = str(descriptor.input_dir)
        env["PINDEPS_OUTPUT"] = str(descriptor.output_dir)
        return list(command.argv), descriptor.source_dir, env


def backend_for(config: Config) -> BuildBackend:
    if config.backend == "host":
        return HostBackend()
    return DockerBackend()


def run(
    descriptor: BuildEnvironmentDescriptor,
    command: CommandSpec,
    *,
    backend: BuildBackend,
    logger: StructuredLogger | None = None,
) -> ExitStatus:
    """Run ``command`` inside the environment and return its exit status."""
    if not command.argv:
        raise LaunchFailedError(
            "No command given to run in the build environment.",
            context={"environment": descriptor.environment},
        )
    backend.prepare(descriptor)
    argv, cwd, env = backend.launch_argv(descriptor, command)
    if logger is not None:
        logger.log(
            operation="run",
            phase="launch",
            message=f"Running in {descriptor.environment} ({descriptor.image}): "
            + " ".join(command.argv),
            extra={"backend": backend.name, "argv": argv},
        )

    capture = command.capture and not command.interactive
    try:
        process = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd is not None else None,
            env=env,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if capture else None,
            text=True,
        )
    except OSError as exc:
        raise LaunchFailedError(
            f"Failed to launch `{argv[0]}`.",
            hint="Check that the command or container runtime is installed.",
            context={
                "backend": backend.name,
                "environment": descriptor.environment,
                "command": " ".join(argv),
                "error": str(exc),
            },
        ) from exc

    interrupted = False
    try:
        stdout, stderr = process.communicate()
    except KeyboardInterrupt:
        interrupted = True
        process.send_signal(signal.SIGINT)
        stdout, stderr = process.communicate()

    returncode = process.returncode
    if interrupted and returncode == 0:
        returncode = SIGINT_EXIT
    elif returncode < 0:
        returncode = 128 - returncode

    if backend.name == "docker" and returncode == DOCKER_RUN_FAILURE and not interrupted:
        raise LaunchFailedError(
            f"Container runtime failed to start environment `{descriptor.environment}`.",
            hint="Check that the image exists and the docker daemon is reachable.",
            context={
                "backend": backend.name,
                "environment": descriptor.environment,
                "image": descriptor.image,
                "stderr": (stderr or "")[:2000],
            },
        )
    return ExitStatus(
        returncode=returncode,
        stdout=stdout,
        stderr=stderr,
        interrupted=interrupted,
    )
