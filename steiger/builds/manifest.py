"""Build metadata output.

This module handles:
- Rendering a RunReport into the external build manifest
- Writing and reading the manifest JSON file

The manifest format is ``{"builds": [{"imageName": ..., "tag": ...}]}``,
one entry per successful image. The deploy step reads it back.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from steiger.builds.models import RunReport

logger = logging.getLogger(__name__)


class ManifestError(Exception):
    """Raised when a build manifest cannot be read."""

    def __init__(self, message: str, code: str = "manifest_error") -> None:
        super().__init__(message)
        self.code = code


class BuildEntry(BaseModel):
    """One built image: its name and final reference."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    image_name: str = Field(alias="imageName", min_length=1)
    tag: str = Field(min_length=1)


class ExternalManifest(BaseModel):
    """Machine-readable record of a build run."""

    model_config = ConfigDict(frozen=True)

    builds: list[BuildEntry] = Field(default_factory=list)

    def tags(self) -> dict[str, str]:
        """Return image name -> reference."""
        return {entry.image_name: entry.tag for entry in self.builds}

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), indent=2)


def render(report: RunReport) -> ExternalManifest:
    """Render the successful entries of a report.

    Failed services are left out; the report still lists them for the
    exit status.

    Args:
        report: Frozen run report.

    Returns:
        ExternalManifest with one entry per image, ordered by image name.
    """
    entries = []
    for entry in report.values():
        if not entry.succeeded:
            continue
        for image in entry.images:
            entries.append(BuildEntry(image_name=image.name, tag=image.reference))
    entries.sort(key=lambda e: e.image_name)
    return ExternalManifest(builds=entries)


def write_manifest(manifest: ExternalManifest, output_path: Path) -> Path:
    """Write the manifest to a JSON file.

    Args:
        manifest: Rendered manifest.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(manifest.to_json() + "\n", encoding="utf-8")
    logger.info("Wrote build manifest to %s", output_path)
    return output_path


def read_manifest(path: Path) -> ExternalManifest:
    """Read a manifest written by write_manifest().

    Raises:
        ManifestError: If the file is missing or malformed.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ManifestError(f"Build manifest not found: {path}", code="not_found") from e
    except json.JSONDecodeError as e:
        raise ManifestError(f"Invalid JSON in {path}: {e}", code="invalid_json") from e

    try:
        return ExternalManifest.model_validate(data)
    except ValidationError as e:
        raise ManifestError(f"Invalid build manifest {path}:\n{e}", code="validation") from e


__all__ = [
    "BuildEntry",
    "ExternalManifest",
    "ManifestError",
    "read_manifest",
    "render",
    "write_manifest",
]
