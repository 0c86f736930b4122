"""In-memory service graph.

ServiceSpec and the BuildSpec variants are the validated, immutable input
of a build run. Each variant corresponds to exactly one backend.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import ClassVar

from steiger.types import BackendKind

# Attribute path under which declarative packages are looked up
DEFAULT_ATTRIBUTE_PREFIX = "packages.${targetSystem}"


@dataclass(frozen=True)
class DockerBuild:
    """Context build with a Dockerfile through a buildx builder instance.

    Attributes:
        context: Build context directory.
        dockerfile: Dockerfile path (defaults to <context>/Dockerfile).
        target: Optional multi-stage target.
        build_args: Build-time variables.
    """

    kind: ClassVar[BackendKind] = BackendKind.DOCKER

    context: str = "."
    dockerfile: str | None = None
    target: str | None = None
    build_args: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class BazelBuild:
    """Query build of named targets in a Bazel workspace.

    Attributes:
        targets: Artifact name to target label.
        platforms: Platform string to Bazel platform label.
    """

    kind: ClassVar[BackendKind] = BackendKind.BAZEL

    targets: Mapping[str, str]
    platforms: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class KoBuild:
    """Package build of a Go import path with ko."""

    kind: ClassVar[BackendKind] = BackendKind.KO

    import_path: str = "."


@dataclass(frozen=True)
class NixBuild:
    """Declarative build of flake package attributes.

    Attributes:
        packages: Artifact name to attribute name.
        flake: Flake reference.
        attribute_prefix: Attribute path the packages live under.
    """

    kind: ClassVar[BackendKind] = BackendKind.NIX

    packages: Mapping[str, str]
    flake: str = "."
    attribute_prefix: str = DEFAULT_ATTRIBUTE_PREFIX


BuildSpec = DockerBuild | BazelBuild | KoBuild | NixBuild


@dataclass(frozen=True)
class ServiceSpec:
    """A service to build.

    Attributes:
        name: Unique service identifier.
        build: Backend-specific build specification.
        platform: Optional per-service platform override.
    """

    name: str
    build: BuildSpec
    platform: str | None = None

    @property
    def backend(self) -> BackendKind:
        return self.build.kind


@dataclass(frozen=True)
class HelmRelease:
    """A Helm release deployed with the built images."""

    name: str
    path: str
    namespace: str | None = None
    timeout: str | None = None
    values: Mapping[str, str] = field(default_factory=dict)
    values_files: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProjectConfig:
    """Validated project configuration."""

    services: Mapping[str, ServiceSpec]
    deploy: Mapping[str, HelmRelease] = field(default_factory=dict)


__all__ = [
    "DEFAULT_ATTRIBUTE_PREFIX",
    "BazelBuild",
    "BuildSpec",
    "DockerBuild",
    "HelmRelease",
    "KoBuild",
    "NixBuild",
    "ProjectConfig",
    "ServiceSpec",
]
