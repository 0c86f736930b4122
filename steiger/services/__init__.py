"""Service configuration.

This module provides:
- The immutable service graph (ServiceSpec and BuildSpec variants)
- Loading and validating steiger.yml into that graph
"""

from steiger.services.io import ConfigError, load_config
from steiger.services.models import (
    BazelBuild,
    BuildSpec,
    DockerBuild,
    HelmRelease,
    KoBuild,
    NixBuild,
    ProjectConfig,
    ServiceSpec,
)

__all__ = [
    "BazelBuild",
    "BuildSpec",
    "ConfigError",
    "DockerBuild",
    "HelmRelease",
    "KoBuild",
    "NixBuild",
    "ProjectConfig",
    "ServiceSpec",
    "load_config",
]
