"""Pydantic models for configuration file validation.

This module defines the schema of steiger.yml. Keys are camelCase in the
file; the models convert to the immutable dataclasses in
steiger.services.models.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from steiger.platforms import PlatformResolutionError, parse_platform
from steiger.services.models import (
    DEFAULT_ATTRIBUTE_PREFIX,
    BazelBuild,
    BuildSpec,
    DockerBuild,
    HelmRelease,
    KoBuild,
    NixBuild,
    ProjectConfig,
    ServiceSpec,
)


class _Schema(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


def _check_platform_keys(v: dict[str, str]) -> dict[str, str]:
    """Return the mapping keyed by canonical os/arch strings."""
    normalized = {}
    for key, label in v.items():
        try:
            normalized[str(parse_platform(key))] = label
        except PlatformResolutionError as e:
            raise ValueError(str(e)) from None
    return normalized


class DockerBuildSchema(_Schema):
    """Schema for a Dockerfile build."""

    type: Literal["docker"]
    context: str = Field(default=".", description="Build context directory")
    dockerfile: str | None = Field(default=None, description="Dockerfile path")
    target: str | None = Field(default=None, description="Multi-stage target")
    build_args: dict[str, str] = Field(default_factory=dict)

    def to_spec(self) -> DockerBuild:
        return DockerBuild(
            context=self.context,
            dockerfile=self.dockerfile,
            target=self.target,
            build_args=dict(self.build_args),
        )


class BazelBuildSchema(_Schema):
    """Schema for a Bazel build."""

    type: Literal["bazel"]
    targets: dict[str, str] = Field(description="Artifact name to target label")
    platforms: dict[str, str] = Field(
        default_factory=dict, description="Platform to Bazel platform label"
    )

    @field_validator("targets")
    @classmethod
    def validate_targets(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate at least one target is configured."""
        if not v:
            raise ValueError("targets must not be empty")
        return v

    @field_validator("platforms")
    @classmethod
    def validate_platforms(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate platform keys are os/arch pairs."""
        return _check_platform_keys(v)

    def to_spec(self) -> BazelBuild:
        return BazelBuild(targets=dict(self.targets), platforms=dict(self.platforms))


class KoBuildSchema(_Schema):
    """Schema for a ko build."""

    type: Literal["ko"]
    import_path: str = Field(default=".", description="Go import path")

    def to_spec(self) -> KoBuild:
        return KoBuild(import_path=self.import_path)


class NixBuildSchema(_Schema):
    """Schema for a Nix flake build."""

    type: Literal["nix"]
    flake: str = Field(default=".", description="Flake reference")
    packages: dict[str, str] = Field(description="Artifact name to attribute")
    attribute_prefix: str = Field(default=DEFAULT_ATTRIBUTE_PREFIX)

    @field_validator("packages")
    @classmethod
    def validate_packages(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate at least one package is configured."""
        if not v:
            raise ValueError("packages must not be empty")
        return v

    def to_spec(self) -> NixBuild:
        return NixBuild(
            packages=dict(self.packages),
            flake=self.flake,
            attribute_prefix=self.attribute_prefix,
        )


BuildSchema = Annotated[
    DockerBuildSchema | BazelBuildSchema | KoBuildSchema | NixBuildSchema,
    Field(discriminator="type"),
]


class ServiceSchema(_Schema):
    """Schema for one service."""

    build: BuildSchema
    platform: str | None = Field(default=None, description="Platform override")

    @field_validator("platform")
    @classmethod
    def validate_platform(cls, v: str | None) -> str | None:
        """Validate the platform override is an os/arch pair."""
        if v is None:
            return v
        try:
            parse_platform(v)
        except PlatformResolutionError as e:
            raise ValueError(str(e)) from None
        return v


class HelmReleaseSchema(_Schema):
    """Schema for a Helm release."""

    type: Literal["helm"]
    path: str = Field(description="Chart directory")
    namespace: str | None = None
    timeout: str | None = None
    values: dict[str, str] = Field(default_factory=dict)
    values_files: list[str] = Field(default_factory=list)


class ProjectSchema(_Schema):
    """Complete configuration file schema."""

    services: dict[str, ServiceSchema]
    deploy: dict[str, HelmReleaseSchema] = Field(default_factory=dict)

    @field_validator("services")
    @classmethod
    def validate_services(cls, v: dict[str, ServiceSchema]) -> dict[str, ServiceSchema]:
        """Validate service names are usable as image names."""
        for name in v:
            if not name or name != name.strip() or "/" in name or ":" in name:
                raise ValueError(f"invalid service name: {name!r}")
        return v

    def to_config(self) -> ProjectConfig:
        """Convert to the immutable in-memory service graph."""
        services: dict[str, ServiceSpec] = {}
        for name, service in sorted(self.services.items()):
            build: BuildSpec = service.build.to_spec()
            services[name] = ServiceSpec(name=name, build=build, platform=service.platform)

        deploy = {
            name: HelmRelease(
                name=name,
                path=release.path,
                namespace=release.namespace,
                timeout=release.timeout,
                values=dict(release.values),
                values_files=tuple(release.values_files),
            )
            for name, release in sorted(self.deploy.items())
        }
        return ProjectConfig(services=services, deploy=deploy)


__all__ = [
    "BazelBuildSchema",
    "DockerBuildSchema",
    "HelmReleaseSchema",
    "KoBuildSchema",
    "NixBuildSchema",
    "ProjectSchema",
    "ServiceSchema",
]
