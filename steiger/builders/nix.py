"""Nix flake builds of image packages.

This module handles:
- Mapping the target platform to a Nix system double
- Checking that the flake provides packages for that system
- Building each package attribute and loading its output as an image
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from steiger.builders.base import (
    BuildContext,
    BuildError,
    ProducedImage,
    artifact_name,
    command_failure,
)
from steiger.exec import CommandError, find_binary, run_checked, run_command
from steiger.image.layout import load_image
from steiger.platforms import PlatformResolutionError, host_platform
from steiger.services.models import DEFAULT_ATTRIBUTE_PREFIX, NixBuild
from steiger.types import BackendKind, Platform

logger = logging.getLogger(__name__)

# OCI architecture names mapped to Nix CPU names
SYSTEM_ARCH = {
    "amd64": "x86_64",
    "arm64": "aarch64",
    "arm": "armv7l",
    "386": "i686",
    "riscv64": "riscv64",
    "ppc64le": "powerpc64le",
    "s390x": "s390x",
}


def platform_to_system(platform: Platform) -> str:
    """Convert a platform to a Nix system double (e.g. 'x86_64-linux').

    Raises:
        ValueError: If the platform has no Nix equivalent.
    """
    arch = SYSTEM_ARCH.get(platform.arch)
    if arch is None or platform.os not in ("linux", "darwin"):
        raise ValueError(f"no nix system for platform {platform}")
    return f"{arch}-{platform.os}"


def parse_out_paths(output: str) -> list[str]:
    """Return the `out` paths from `nix build --json` output."""
    results = json.loads(output)
    paths = []
    for result in results:
        outputs = result.get("outputs", {})
        if "out" in outputs:
            paths.append(outputs["out"])
    return paths


class NixBuilder:
    """Backend for flake packages that evaluate to image artifacts."""

    kind = BackendKind.NIX

    def __init__(self, binary: str) -> None:
        self.binary = binary

    @classmethod
    def try_init(cls) -> NixBuilder:
        """Locate the nix binary.

        Raises:
            CommandError: If nix is not installed.
        """
        binary = find_binary("nix")
        if binary is None:
            raise CommandError("failed to find nix binary", code="not_found")
        return cls(binary)

    def detect_systems(self, flake: str, ctx: BuildContext) -> list[str]:
        """List the systems the flake provides packages for."""
        result = run_checked(
            [
                self.binary,
                "eval",
                f"{flake}#packages",
                "--apply",
                "builtins.attrNames",
                "--json",
            ],
            cwd=ctx.working_dir,
            timeout=ctx.command_timeout,
            cancel=ctx.cancel,
        )
        return json.loads(result.stdout)

    def build_package(self, installable: str, ctx: BuildContext) -> Path:
        """Build one installable and return its `out` store path."""
        progress = ctx.progress.child("nix")
        progress.info(f"starting build for package: {installable}")

        result = run_command(
            [self.binary, "build", "--no-link", "--json", installable],
            cwd=ctx.working_dir,
            timeout=ctx.build_timeout,
            cancel=ctx.cancel,
            on_line=progress.output,
        )
        if not result.success:
            raise command_failure(ctx, self.kind, "nix build", result)

        try:
            paths = parse_out_paths(result.stdout)
        except (json.JSONDecodeError, AttributeError) as e:
            raise BuildError(
                ctx.service,
                self.kind,
                f"failed to parse nix build output: {e}",
                code="invalid_output",
            ) from e
        if not paths:
            raise BuildError(
                ctx.service,
                self.kind,
                f"nix build produced no output for {installable}",
                code="missing_artifact",
            )

        progress.success(f"successfully built package: {installable}")
        return Path(paths[0])

    def build(self, spec: NixBuild, ctx: BuildContext) -> list[ProducedImage]:
        """Build every package of a service.

        Raises:
            BuildError: If the platform is unavailable or a package fails.
        """
        progress = ctx.progress
        progress.info("starting builder")

        try:
            target_system = platform_to_system(ctx.platform)
        except ValueError as e:
            raise BuildError(
                ctx.service, self.kind, str(e), code="missing_platform"
            ) from e
        try:
            host_system = platform_to_system(host_platform())
        except (PlatformResolutionError, ValueError):
            host_system = target_system

        systems = {"targetSystem": target_system, "hostSystem": host_system}
        flake = ctx.substitute(spec.flake)
        prefix = ctx.substitute(spec.attribute_prefix, systems)
        progress.info(f"using platform: {target_system}")

        if spec.attribute_prefix == DEFAULT_ATTRIBUTE_PREFIX:
            try:
                available = self.detect_systems(flake, ctx)
            except json.JSONDecodeError as e:
                raise BuildError(
                    ctx.service,
                    self.kind,
                    f"failed to parse flake systems: {e}",
                    code="invalid_output",
                ) from e
            if target_system not in available:
                raise BuildError(
                    ctx.service,
                    self.kind,
                    f"flake {flake} provides no packages for {target_system}",
                    code="missing_platform",
                )

        images = []
        for artifact, attribute in sorted(spec.packages.items()):
            attr = ctx.substitute(attribute, systems)
            out_path = self.build_package(f"{flake}#{prefix}.{attr}", ctx)
            images.append(
                ProducedImage(
                    name=artifact_name(ctx.service, artifact, len(spec.packages)),
                    artifact=load_image(out_path, ctx.output_dir / artifact),
                    tag=ctx.tag,
                )
            )

        progress.success("finished building packages")
        return images


__all__ = ["NixBuilder", "parse_out_paths", "platform_to_system"]
