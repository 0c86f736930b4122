"""Helm releases.

This module handles:
- Locating the helm binary
- Validating chart paths before anything is deployed
- Composing and running `helm upgrade --install` with the built images
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from steiger.builds.manifest import ExternalManifest
from steiger.events import ServiceProgress
from steiger.exec import CancelToken, CommandError, find_binary, run_command
from steiger.services.models import HelmRelease

logger = logging.getLogger(__name__)

_WORD_PATTERN = re.compile(r"[A-Z]+(?![a-z])|[A-Z]?[a-z]+|[0-9]+")


class DeployError(Exception):
    """Raised when a release cannot be deployed."""

    def __init__(self, message: str, code: str = "deploy_error") -> None:
        super().__init__(message)
        self.code = code


def camel_case(value: str) -> str:
    """Convert an image name to camelCase ('backend-app' -> 'backendApp')."""
    words = _WORD_PATTERN.findall(value)
    if not words:
        return value
    return words[0].lower() + "".join(word.capitalize() for word in words[1:])


def image_values(manifest: ExternalManifest) -> list[str]:
    """Return the --set values pointing the chart at the built images."""
    return [
        f"steiger.{camel_case(entry.image_name)}.image={entry.tag}"
        for entry in manifest.builds
    ]


class HelmDeployer:
    """Deploys Helm releases."""

    def __init__(self, binary: str, working_dir: Path | None = None) -> None:
        self.binary = binary
        self.working_dir = working_dir or Path.cwd()

    @classmethod
    def try_init(cls, working_dir: Path | None = None) -> HelmDeployer:
        """Locate the helm binary.

        Raises:
            DeployError: If helm is not installed.
        """
        binary = find_binary("helm")
        if binary is None:
            raise DeployError("failed to find helm binary", code="tool_not_found")
        return cls(binary, working_dir)

    def chart_path(self, release: HelmRelease) -> Path:
        path = Path(release.path)
        return path if path.is_absolute() else self.working_dir / path

    def validate(self, release: HelmRelease) -> None:
        """Check that the release's chart is a directory.

        Raises:
            DeployError: If the chart is missing or not a directory.
        """
        path = self.chart_path(release)
        if not path.exists():
            raise DeployError(
                f"{release.name}: helm chart not found at '{release.path}'",
                code="chart_not_found",
            )
        if not path.is_dir():
            raise DeployError(
                f"{release.name}: helm chart at '{release.path}' is not a directory",
                code="not_a_directory",
            )

    def compose_command(
        self, release: HelmRelease, manifest: ExternalManifest
    ) -> list[str]:
        """Compose the `helm upgrade --install` command for a release.

        Args:
            release: Release configuration.
            manifest: Build manifest with the image references.

        Returns:
            Command as list of strings suitable for subprocess.
        """
        cmd = [self.binary, "upgrade", "--install", release.name, release.path]

        for value in image_values(manifest):
            cmd.extend(["--set", value])

        if release.timeout:
            cmd.extend(["--timeout", release.timeout])

        if release.namespace:
            cmd.extend(["--namespace", release.namespace])

        for key, value in release.values.items():
            cmd.extend(["--set", f"{key}={value}"])

        for values_file in release.values_files:
            cmd.extend(["--values", values_file])

        return cmd

    def deploy(
        self,
        release: HelmRelease,
        manifest: ExternalManifest,
        progress: ServiceProgress,
        cancel: CancelToken | None = None,
        timeout: float | None = None,
    ) -> None:
        """Upgrade or install a release.

        Raises:
            DeployError: If helm cannot run or exits non-zero.
        """
        progress.info("upgrade/install helm release")
        try:
            result = run_command(
                self.compose_command(release, manifest),
                cwd=self.working_dir,
                timeout=timeout,
                cancel=cancel,
                on_line=progress.child("helm").output,
            )
        except CommandError as e:
            progress.failure(str(e))
            raise DeployError(f"{release.name}: {e}", code=e.code) from e

        if not result.success:
            progress.failure(f"deployment failed with exit code: {result.exit_code}")
            detail = result.diagnostic()
            message = f"{release.name}: 'helm upgrade' failed with exit code {result.exit_code}"
            if detail:
                message = f"{message}\n{detail}"
            raise DeployError(message, code="command_failed")

        progress.success("deployment finished")


__all__ = ["DeployError", "HelmDeployer", "camel_case", "image_values"]
