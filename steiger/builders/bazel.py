"""Bazel builds of named image targets.

This module handles:
- Mapping the target platform to a Bazel platform label
- Running `bazel build` for every configured target
- Querying the output OCI layout of each target with `bazel cquery`
"""

from __future__ import annotations

import json
import logging

from steiger.builders.base import (
    BuildContext,
    BuildError,
    ProducedImage,
    artifact_name,
    command_failure,
)
from steiger.exec import CommandError, find_binary, run_checked, run_command
from steiger.image.layout import load_layout
from steiger.services.models import BazelBuild
from steiger.types import BackendKind

logger = logging.getLogger(__name__)

# Starlark expression printing [label, first output path] per target
CQUERY_EXPR = (
    "json.encode(["
    "'//{}:{}'.format(target.label.package, target.label.name), "
    "[f.path for f in target.files.to_list()][0]"
    "])"
)


def normalize_label(label: str) -> str:
    """Normalize a main-repository target label to ``//package:name``.

    Args:
        label: Label such as '//app:image', '//app' or '@//app:image'.

    Returns:
        Canonical label.

    Raises:
        ValueError: If the label is empty or points into another repository.
    """
    value = label.strip()
    for prefix in ("@@//", "@//"):
        if value.startswith(prefix):
            value = "//" + value[len(prefix) :]
    if value.startswith("@"):
        raise ValueError(f"labels from external repositories are not supported: {label}")
    if not value.startswith("//"):
        value = "//" + value.lstrip("/")
    package, sep, name = value[2:].partition(":")
    if not sep:
        name = package.rsplit("/", 1)[-1]
    if not name:
        raise ValueError(f"invalid target label: {label!r}")
    return f"//{package}:{name}"


def parse_cquery_output(output: str) -> dict[str, str]:
    """Parse cquery starlark output into a label -> output path mapping."""
    outputs: dict[str, str] = {}
    for line in output.strip().splitlines():
        if not line.strip():
            continue
        label, path = json.loads(line)
        outputs[label] = path
    return outputs


class BazelBuilder:
    """Backend for Bazel targets producing OCI layouts."""

    kind = BackendKind.BAZEL

    def __init__(self, binary: str) -> None:
        self.binary = binary

    @classmethod
    def try_init(cls) -> BazelBuilder:
        """Locate the bazel (or bazelisk) binary.

        Raises:
            CommandError: If neither is installed.
        """
        binary = find_binary("bazel", "bazelisk")
        if binary is None:
            raise CommandError("failed to find bazel binary", code="not_found")
        return cls(binary)

    def platform_flags(self, spec: BazelBuild, ctx: BuildContext) -> list[str]:
        """Return the --platforms flag for the target platform.

        Raises:
            BuildError: If a platform mapping exists but lacks the platform.
        """
        if not spec.platforms:
            return []
        label = spec.platforms.get(str(ctx.platform))
        if label is None:
            raise BuildError(
                ctx.service,
                self.kind,
                f"no bazel platform configured for {ctx.platform} "
                f"(configured: {', '.join(sorted(spec.platforms))})",
                code="missing_platform",
            )
        label = ctx.substitute(label)
        ctx.progress.info(f"using platform: {label}")
        return [f"--platforms={label}"]

    def query_outputs(
        self, labels: list[str], flags: list[str], ctx: BuildContext
    ) -> dict[str, str]:
        """Return the first output file of each target."""
        query = " union ".join(f'"{label}"' for label in labels)
        result = run_checked(
            [
                self.binary,
                "cquery",
                *flags,
                query,
                "--output=starlark",
                f"--starlark:expr={CQUERY_EXPR}",
            ],
            cwd=ctx.working_dir,
            timeout=ctx.command_timeout,
            cancel=ctx.cancel,
        )
        try:
            return parse_cquery_output(result.stdout)
        except (TypeError, ValueError) as e:
            raise BuildError(
                ctx.service,
                self.kind,
                f"failed to parse cquery output: {e}",
                code="invalid_output",
            ) from e

    def build(self, spec: BazelBuild, ctx: BuildContext) -> list[ProducedImage]:
        """Build all targets of a service.

        Raises:
            BuildError: If a target is invalid, the build fails or an
                output cannot be matched to an artifact.
        """
        progress = ctx.progress
        progress.info("starting builder")

        targets: dict[str, str] = {}
        for artifact, label in sorted(spec.targets.items()):
            try:
                targets[artifact] = normalize_label(ctx.substitute(label))
            except ValueError as e:
                raise BuildError(
                    ctx.service, self.kind, str(e), code="invalid_target"
                ) from e

        flags = self.platform_flags(spec, ctx)
        labels = list(targets.values())

        result = run_command(
            [self.binary, "build", *flags, *labels],
            cwd=ctx.working_dir,
            timeout=ctx.build_timeout,
            cancel=ctx.cancel,
            on_line=progress.child("bazel").output,
        )
        if not result.success:
            raise command_failure(ctx, self.kind, "bazel build", result)

        progress.success("build finished")
        progress.info("gathering output")

        outputs = self.query_outputs(labels, flags, ctx)
        by_label = {label: artifact for artifact, label in targets.items()}
        for label in outputs:
            if label not in by_label:
                raise BuildError(
                    ctx.service,
                    self.kind,
                    f"unable to find artifact for target: {label}",
                    code="missing_artifact",
                )

        images = []
        for artifact, label in targets.items():
            path = outputs.get(label)
            if path is None:
                raise BuildError(
                    ctx.service,
                    self.kind,
                    f"no output found for target: {label}",
                    code="missing_artifact",
                )
            images.append(
                ProducedImage(
                    name=artifact_name(ctx.service, artifact, len(targets)),
                    artifact=load_layout(ctx.resolve_path(path)),
                    tag=ctx.tag,
                )
            )
        return images


__all__ = ["BazelBuilder", "normalize_label", "parse_cquery_output"]
