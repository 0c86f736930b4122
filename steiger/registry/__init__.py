"""Registry interaction.

This module provides:
- RegistryClient, pushing image artifacts only when their digest is absent
- Credential providers keyed by registry host
"""

from steiger.registry.client import PushError, RegistryClient, Repository
from steiger.registry.credentials import (
    AnonymousCredentials,
    CredentialProvider,
    Credentials,
    DockerConfigCredentials,
    StaticCredentials,
)

__all__ = [
    "AnonymousCredentials",
    "CredentialProvider",
    "Credentials",
    "DockerConfigCredentials",
    "PushError",
    "RegistryClient",
    "Repository",
    "StaticCredentials",
]
