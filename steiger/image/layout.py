"""OCI image layout loading.

This module handles:
- Reading index.json and manifests from an OCI image layout directory
- Validating descriptor digests
- Extracting OCI archive tarballs
- Computing the content digest that identifies an image

Every backend produces an OCI image layout; the registry client pushes
what is loaded here.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

MANIFEST_MEDIA_TYPES = (OCI_MANIFEST, DOCKER_MANIFEST)
INDEX_MEDIA_TYPES = (OCI_INDEX, DOCKER_MANIFEST_LIST)

DIGEST_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")

# Annotation buildx puts on attestation manifests inside an index
ATTESTATION_ANNOTATION = "vnd.docker.reference.type"


class ImageError(Exception):
    """Raised when a produced image cannot be loaded."""

    def __init__(self, message: str, code: str = "image_error") -> None:
        super().__init__(message)
        self.code = code


def compute_digest(data: bytes) -> str:
    """Return the sha256 content digest of raw bytes."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def validate_digest(digest: Any) -> str:
    """Check that a digest is a well-formed sha256 digest.

    Raises:
        ImageError: With code "invalid_digest".
    """
    if not isinstance(digest, str) or not DIGEST_PATTERN.match(digest):
        raise ImageError(f"Malformed digest: {digest!r}", code="invalid_digest")
    return digest


@dataclass(frozen=True)
class Descriptor:
    """OCI content descriptor."""

    media_type: str
    digest: str
    size: int
    platform: dict[str, Any] | None = None
    annotations: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Descriptor:
        """Build a descriptor from its JSON form, validating the digest."""
        if not isinstance(data, dict):
            raise ImageError(f"Invalid descriptor: {data!r}", code="invalid_manifest")
        size = data.get("size")
        if not isinstance(size, int) or size < 0:
            raise ImageError(f"Invalid descriptor size: {size!r}", code="invalid_manifest")
        return cls(
            media_type=data.get("mediaType", ""),
            digest=validate_digest(data.get("digest")),
            size=size,
            platform=data.get("platform"),
            annotations=data.get("annotations") or {},
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
        }
        if self.platform:
            result["platform"] = self.platform
        if self.annotations:
            result["annotations"] = self.annotations
        return result


def blob_path(layout: Path, digest: str) -> Path:
    """Return the path of a blob inside an OCI layout."""
    algorithm, _, encoded = validate_digest(digest).partition(":")
    return layout / "blobs" / algorithm / encoded


def read_blob(layout: Path, descriptor: Descriptor) -> bytes:
    """Read a blob and verify it matches its descriptor digest.

    Raises:
        ImageError: If the blob is missing or its content does not match.
    """
    path = blob_path(layout, descriptor.digest)
    try:
        data = path.read_bytes()
    except FileNotFoundError as e:
        raise ImageError(
            f"Missing blob {descriptor.digest} in {layout}", code="missing_blob"
        ) from e
    if compute_digest(data) != descriptor.digest:
        raise ImageError(
            f"Blob {descriptor.digest} in {layout} does not match its digest",
            code="digest_mismatch",
        )
    return data


@dataclass(frozen=True)
class LocalImage:
    """A single-platform image manifest stored in an OCI layout.

    Attributes:
        layout: Layout directory holding the blobs.
        manifest: Raw manifest bytes, pushed as-is.
        media_type: Manifest media type.
        digest: sha256 digest of the raw manifest bytes.
        config: Config blob descriptor.
        layers: Layer blob descriptors.
        platform: Platform from the referencing index, if any.
    """

    layout: Path
    manifest: bytes
    media_type: str
    digest: str
    config: Descriptor
    layers: tuple[Descriptor, ...]
    platform: dict[str, Any] | None = None

    def blobs(self) -> tuple[Descriptor, ...]:
        """Return every blob the manifest references, layers first."""
        return (*self.layers, self.config)

    def blob_path(self, descriptor: Descriptor) -> Path:
        return blob_path(self.layout, descriptor.digest)

    def descriptor(self) -> Descriptor:
        """Return a descriptor pointing at this manifest."""
        return Descriptor(
            media_type=self.media_type,
            digest=self.digest,
            size=len(self.manifest),
            platform=self.platform,
        )


@dataclass(frozen=True)
class ImageArtifact:
    """The pushable result of one build artifact.

    A single-platform artifact is pushed as its manifest. A multi-platform
    artifact is pushed as an image index over its manifests.
    """

    layout: Path
    images: tuple[LocalImage, ...]

    @property
    def is_index(self) -> bool:
        return len(self.images) > 1

    @property
    def manifest(self) -> bytes:
        """Raw bytes of the top-level object (manifest or index)."""
        if not self.is_index:
            return self.images[0].manifest
        index = {
            "schemaVersion": 2,
            "mediaType": OCI_INDEX,
            "manifests": [image.descriptor().to_dict() for image in self.images],
        }
        return json.dumps(index, sort_keys=True, separators=(",", ":")).encode()

    @property
    def media_type(self) -> str:
        return OCI_INDEX if self.is_index else self.images[0].media_type

    @property
    def digest(self) -> str:
        """Content digest identifying this artifact."""
        if not self.is_index:
            return self.images[0].digest
        return compute_digest(self.manifest)


def _load_json(data: bytes, source: str) -> dict[str, Any]:
    try:
        parsed = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ImageError(f"Invalid JSON in {source}: {e}", code="invalid_manifest") from e
    if not isinstance(parsed, dict):
        raise ImageError(f"Expected a JSON object in {source}", code="invalid_manifest")
    return parsed


def _is_attestation(descriptor: Descriptor) -> bool:
    if descriptor.annotations.get(ATTESTATION_ANNOTATION) == "attestation-manifest":
        return True
    platform = descriptor.platform or {}
    return platform.get("os") == "unknown" or platform.get("architecture") == "unknown"


def _collect_images(
    layout: Path,
    descriptors: list[Descriptor],
    images: list[LocalImage],
) -> None:
    for descriptor in descriptors:
        if _is_attestation(descriptor):
            logger.debug("Skipping attestation manifest %s", descriptor.digest)
            continue

        data = read_blob(layout, descriptor)
        document = _load_json(data, descriptor.digest)
        media_type = document.get("mediaType") or descriptor.media_type

        if media_type in INDEX_MEDIA_TYPES or "manifests" in document:
            nested = [Descriptor.from_dict(d) for d in document.get("manifests", [])]
            _collect_images(layout, nested, images)
            continue

        if media_type not in MANIFEST_MEDIA_TYPES and "layers" not in document:
            raise ImageError(
                f"Unsupported manifest media type: {media_type!r}",
                code="invalid_manifest",
            )

        images.append(
            LocalImage(
                layout=layout,
                manifest=data,
                media_type=media_type or OCI_MANIFEST,
                digest=descriptor.digest,
                config=Descriptor.from_dict(document.get("config")),
                layers=tuple(Descriptor.from_dict(d) for d in document.get("layers", [])),
                platform=descriptor.platform,
            )
        )


def load_layout(layout: Path) -> ImageArtifact:
    """Load an OCI image layout directory.

    Args:
        layout: Directory containing index.json and blobs/.

    Returns:
        ImageArtifact with one LocalImage per platform manifest.

    Raises:
        ImageError: If the layout is missing, malformed or has bad digests.
    """
    index_path = layout / "index.json"
    try:
        index = _load_json(index_path.read_bytes(), str(index_path))
    except FileNotFoundError as e:
        raise ImageError(
            f"Not an OCI image layout (no index.json): {layout}",
            code="invalid_layout",
        ) from e

    descriptors = [Descriptor.from_dict(d) for d in index.get("manifests", [])]
    images: list[LocalImage] = []
    _collect_images(layout, descriptors, images)

    if not images:
        raise ImageError(f"No image manifests found in {layout}", code="invalid_layout")

    # Identical manifests referenced twice are one image
    unique = {image.digest: image for image in images}
    artifact = ImageArtifact(layout=layout, images=tuple(unique.values()))
    logger.info(
        "Loaded %d image manifest(s) from %s (digest=%s)",
        len(artifact.images),
        layout,
        artifact.digest[:19],
    )
    return artifact


def extract_layout_archive(archive_path: Path, dest_dir: Path) -> Path:
    """Extract an OCI archive tarball to a directory.

    Args:
        archive_path: Path to the .tar or .tar.gz archive.
        dest_dir: Destination directory for extraction.

    Returns:
        The destination directory.

    Raises:
        ImageError: If extraction fails or the archive is unsafe.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive_path, "r:*") as tar:
            for member in tar.getmembers():
                # Security: prevent path traversal
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ImageError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )
            tar.extractall(dest_dir, filter="data")
    except tarfile.TarError as e:
        raise ImageError(
            f"Failed to extract {archive_path}: {e}", code="tar_error"
        ) from e
    except OSError as e:
        raise ImageError(
            f"OS error extracting {archive_path}: {e}", code="os_error"
        ) from e

    return dest_dir


def load_image(path: Path, scratch_dir: Path) -> ImageArtifact:
    """Load an image from a layout directory or an OCI archive.

    Args:
        path: Layout directory or archive file.
        scratch_dir: Where archives are extracted.

    Returns:
        Loaded ImageArtifact.

    Raises:
        ImageError: If the path is neither a layout nor a readable archive.
    """
    if path.is_dir():
        return load_layout(path)
    if path.is_file() and tarfile.is_tarfile(path):
        return load_layout(extract_layout_archive(path, scratch_dir))
    raise ImageError(f"Not an OCI image layout or archive: {path}", code="invalid_layout")


__all__ = [
    "DIGEST_PATTERN",
    "DOCKER_MANIFEST",
    "OCI_INDEX",
    "OCI_MANIFEST",
    "Descriptor",
    "ImageArtifact",
    "ImageError",
    "LocalImage",
    "blob_path",
    "compute_digest",
    "extract_layout_archive",
    "load_image",
    "load_layout",
    "read_blob",
    "validate_digest",
]
