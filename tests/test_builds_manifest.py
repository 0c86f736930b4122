"""Tests for the build manifest."""

import json

import pytest

from steiger.builders.base import BuildError
from steiger.builds.manifest import (
    ExternalManifest,
    ManifestError,
    read_manifest,
    render,
    write_manifest,
)
from steiger.builds.models import BuildResult, RunReport, ServiceReport
from steiger.types import BackendKind, ImageRef

DIGEST = "sha256:" + "2" * 64


def _report() -> RunReport:
    return RunReport(
        {
            "frontend": ServiceReport(
                BuildResult.success(
                    "frontend",
                    BackendKind.DOCKER,
                    [ImageRef("frontend", "gcr.io/x/frontend", DIGEST, "latest")],
                )
            ),
            "backend": ServiceReport(
                BuildResult.success(
                    "backend",
                    BackendKind.BAZEL,
                    [
                        ImageRef("backend-migrations", "gcr.io/x/backend-migrations", DIGEST),
                        ImageRef("backend-app", "gcr.io/x/backend-app", DIGEST),
                    ],
                )
            ),
            "worker": ServiceReport(
                BuildResult.failure(BuildError("worker", BackendKind.KO, "exit 1"))
            ),
        }
    )


class TestRender:
    """Tests for render function."""

    def test_successful_images_only(self):
        """Failed services should be left out; images ordered by name."""
        manifest = render(_report())
        assert manifest.tags() == {
            "backend-app": f"gcr.io/x/backend-app@{DIGEST}",
            "backend-migrations": f"gcr.io/x/backend-migrations@{DIGEST}",
            "frontend": "gcr.io/x/frontend:latest",
        }
        assert [e.image_name for e in manifest.builds] == [
            "backend-app",
            "backend-migrations",
            "frontend",
        ]

    def test_json_uses_camel_case(self):
        data = json.loads(render(_report()).to_json())
        assert data["builds"][2] == {"imageName": "frontend", "tag": "gcr.io/x/frontend:latest"}


class TestReadWrite:
    """Tests for write_manifest and read_manifest."""

    def test_written_manifest_reads_back(self, tmp_path):
        manifest = render(_report())
        path = write_manifest(manifest, tmp_path / "out" / "build.json")
        assert read_manifest(path) == manifest

    def test_missing_file(self, tmp_path):
        with pytest.raises(ManifestError) as exc_info:
            read_manifest(tmp_path / "missing.json")
        assert exc_info.value.code == "not_found"

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "build.json"
        path.write_text("{")
        with pytest.raises(ManifestError) as exc_info:
            read_manifest(path)
        assert exc_info.value.code == "invalid_json"

    def test_invalid_shape(self, tmp_path):
        path = tmp_path / "build.json"
        path.write_text(json.dumps({"builds": [{"imageName": "app"}]}))
        with pytest.raises(ManifestError) as exc_info:
            read_manifest(path)
        assert exc_info.value.code == "validation"

    def test_empty_manifest(self):
        assert ExternalManifest().to_json() == '{\n  "builds": []\n}'
