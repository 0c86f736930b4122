"""Shared type definitions for steiger.

This module contains dataclasses, enums and constants shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum

# Fixed set of target platform components, in Go/OCI naming
SUPPORTED_OS = ("linux", "darwin", "windows")
SUPPORTED_ARCH = ("amd64", "arm64", "arm", "386", "ppc64le", "s390x", "riscv64")

# Human tag given to single-image backends when none is requested
DEFAULT_TAG = "latest"


class BackendKind(str, Enum):
    """Build mechanism a service is bound to."""

    DOCKER = "docker"
    BAZEL = "bazel"
    KO = "ko"
    NIX = "nix"


class BuildStatus(str, Enum):
    """Status of a service build."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PushStatus(str, Enum):
    """Outcome of a push attempt for one image."""

    PUSHED = "pushed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Platform:
    """Target platform as an (OS, architecture) pair."""

    os: str
    arch: str

    def __str__(self) -> str:
        return f"{self.os}/{self.arch}"


@dataclass(frozen=True)
class ImageRef:
    """Reference to a produced image.

    Attributes:
        name: Image name (service name, or service-artifact for
            multi-artifact backends).
        repository: Full repository path (``repo/name`` or just ``name``
            when no destination repository is set).
        digest: Content digest (``sha256:<hex>``).
        tag: Human tag, if any.
    """

    name: str
    repository: str
    digest: str
    tag: str | None = None

    @property
    def digest_reference(self) -> str:
        """Return the content-addressed ``repository@digest`` form."""
        return f"{self.repository}@{self.digest}"

    @property
    def reference(self) -> str:
        """Return the tag form if a human tag exists, else the digest form."""
        if self.tag:
            return f"{self.repository}:{self.tag}"
        return self.digest_reference


@dataclass(frozen=True)
class PushOutcome:
    """Result of making sure an image exists in the destination registry.

    Attributes:
        image: The image that was pushed or skipped.
        status: Whether a transfer happened.
        blobs_uploaded: Number of blobs uploaded (0 when skipped).
    """

    image: ImageRef
    status: PushStatus
    blobs_uploaded: int = 0

    @property
    def reference(self) -> str:
        """Final remote reference used in output."""
        return self.image.reference

    @property
    def skipped(self) -> bool:
        return self.status == PushStatus.SKIPPED


__all__ = [
    "DEFAULT_TAG",
    "SUPPORTED_ARCH",
    "SUPPORTED_OS",
    "BackendKind",
    "BuildStatus",
    "ImageRef",
    "Platform",
    "PushOutcome",
    "PushStatus",
]
