"""Dockerfile builds through a docker buildx builder instance.

This module handles:
- Making sure the persistent buildx builder instance exists (created once)
- Composing and running `docker build` with OCI layout output
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future
from pathlib import Path

from steiger.builders.base import (
    BuildContext,
    BuildError,
    ProducedImage,
    command_failure,
)
from steiger.events import ServiceProgress
from steiger.exec import CancelToken, CommandError, find_binary, run_checked, run_command
from steiger.image.layout import load_layout
from steiger.services.models import DockerBuild
from steiger.types import DEFAULT_TAG, BackendKind

logger = logging.getLogger(__name__)

# buildx driver for the persistent builder instance
BUILDER_DRIVER = "docker-container"

# Seconds between cancellation checks while waiting for another creator
WAIT_INTERVAL = 0.2


class BuilderInstance:
    """The persistent buildx builder instance, shared by every docker build.

    ensure() creates the instance at most once per process. Concurrent
    callers wait for the in-flight creation instead of starting their own.
    """

    def __init__(self, binary: str, name: str, command_timeout: float = 60) -> None:
        self.binary = binary
        self.name = name
        self.command_timeout = command_timeout
        self.creations = 0
        self._lock = threading.Lock()
        self._ready = False
        self._pending: Future[bool] | None = None

    def list_builders(self, cancel: CancelToken | None = None) -> list[str]:
        """Return the names of existing buildx builders."""
        result = run_checked(
            [self.binary, "buildx", "ls", "--format=json"],
            timeout=self.command_timeout,
            cancel=cancel,
        )
        names = []
        for line in result.stdout.splitlines():
            if line.strip():
                names.append(json.loads(line).get("Name", ""))
        return names

    def create(self, cancel: CancelToken | None = None) -> None:
        """Create the builder instance."""
        run_checked(
            [
                self.binary,
                "buildx",
                "create",
                f"--driver={BUILDER_DRIVER}",
                f"--name={self.name}",
            ],
            timeout=self.command_timeout,
            cancel=cancel,
        )
        self.creations += 1
        logger.info("Created buildx builder %s", self.name)

    def _create_if_missing(
        self, progress: ServiceProgress, cancel: CancelToken | None
    ) -> bool:
        if self.name in self.list_builders(cancel):
            progress.info("using existing buildkit builder")
            return False
        progress.info("creating buildkit builder")
        self.create(cancel)
        progress.success("buildkit builder created")
        return True

    def ensure(
        self, progress: ServiceProgress, cancel: CancelToken | None = None
    ) -> bool:
        """Make sure the builder instance exists.

        Args:
            progress: Progress reporter of the calling service.
            cancel: Token that aborts the buildx commands and the wait
                for a creation started by another caller.

        Returns:
            True if this call created the instance.

        Raises:
            CommandError: If listing or creating builders fails or the
                wait is aborted.
            json.JSONDecodeError: If buildx output cannot be parsed.
        """
        with self._lock:
            if self._ready:
                return False
            pending = self._pending
            owner = pending is None
            if owner:
                pending = self._pending = Future()

        assert pending is not None
        if not owner:
            progress.info("waiting for buildkit builder")
            while cancel is not None and not pending.done():
                if cancel.wait(WAIT_INTERVAL):
                    raise CommandError(
                        "aborted while waiting for buildkit builder", code="aborted"
                    )
            pending.result()
            return False

        try:
            created = self._create_if_missing(progress, cancel)
        except BaseException as e:
            # Waiters see this failure; the next call tries again
            with self._lock:
                self._pending = None
            pending.set_exception(e)
            raise

        with self._lock:
            self._ready = True
            self._pending = None
        pending.set_result(created)
        return created


def compose_build_command(
    binary: str,
    builder_name: str,
    spec: DockerBuild,
    ctx: BuildContext,
    dest: Path,
) -> list[str]:
    """Compose the `docker build` command for a service.

    Args:
        binary: Path to the docker binary.
        builder_name: buildx builder instance name.
        spec: DockerBuild spec.
        ctx: Build context.
        dest: Directory for the OCI layout output.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    context = ctx.substitute(spec.context)
    if spec.dockerfile:
        dockerfile = ctx.substitute(spec.dockerfile)
    else:
        dockerfile = f"{context}/Dockerfile"

    cmd = [
        binary,
        "build",
        "--builder",
        builder_name,
        "--platform",
        str(ctx.platform),
        "--output",
        f"type=oci,dest={dest},tar=false",
        "--file",
        dockerfile,
    ]

    if spec.target:
        cmd.extend(["--target", ctx.substitute(spec.target)])

    for key, value in sorted(spec.build_args.items()):
        cmd.extend(["--build-arg", f"{key}={ctx.substitute(value)}"])

    cmd.append(context)
    return cmd


class DockerBuilder:
    """Backend for Dockerfile builds."""

    kind = BackendKind.DOCKER

    def __init__(
        self, binary: str, builder_name: str = "steiger", command_timeout: float = 60
    ) -> None:
        self.binary = binary
        self.instance = BuilderInstance(binary, builder_name, command_timeout)

    @classmethod
    def try_init(
        cls, builder_name: str = "steiger", command_timeout: float = 60
    ) -> DockerBuilder:
        """Locate the docker binary.

        Raises:
            CommandError: If docker is not installed.
        """
        binary = find_binary("docker")
        if binary is None:
            raise CommandError("failed to find docker binary", code="not_found")
        return cls(binary, builder_name, command_timeout)

    def build(self, spec: DockerBuild, ctx: BuildContext) -> list[ProducedImage]:
        """Build a Dockerfile into an OCI layout.

        Raises:
            BuildError: If the builder instance or the build fails.
        """
        progress = ctx.progress
        progress.info("starting builder")

        try:
            self.instance.ensure(progress, ctx.cancel)
        except CommandError as e:
            code = "aborted" if e.code == "aborted" else "builder_instance"
            raise BuildError(
                ctx.service,
                self.kind,
                f"failed to prepare buildkit builder: {e}",
                code=code,
            ) from e
        except json.JSONDecodeError as e:
            raise BuildError(
                ctx.service,
                self.kind,
                f"failed to parse buildx output: {e}",
                code="builder_instance",
            ) from e

        dest = ctx.output_dir / "oci"
        cmd = compose_build_command(
            self.binary, self.instance.name, spec, ctx, dest
        )
        result = run_command(
            cmd,
            cwd=ctx.working_dir,
            timeout=ctx.build_timeout,
            cancel=ctx.cancel,
            on_line=progress.child("docker").output,
        )
        if not result.success:
            raise command_failure(ctx, self.kind, "docker build", result)

        progress.success("build finished")
        return [
            ProducedImage(
                name=ctx.service,
                artifact=load_layout(dest),
                tag=ctx.tag or DEFAULT_TAG,
            )
        ]


__all__ = ["BuilderInstance", "DockerBuilder", "compose_build_command"]
