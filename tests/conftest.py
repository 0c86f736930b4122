"""Shared fixtures: OCI image layouts written to disk."""

import hashlib
import json
from pathlib import Path
from typing import Any

import pytest

from steiger.builders.base import BuildContext
from steiger.events import RecordingSink, ServiceProgress
from steiger.exec import CancelToken
from steiger.types import Platform

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"


def _put_blob(layout: Path, data: bytes, media_type: str) -> dict[str, Any]:
    digest = hashlib.sha256(data).hexdigest()
    blob_dir = layout / "blobs" / "sha256"
    blob_dir.mkdir(parents=True, exist_ok=True)
    (blob_dir / digest).write_bytes(data)
    return {"mediaType": media_type, "digest": f"sha256:{digest}", "size": len(data)}


def write_image(
    layout: Path,
    layers: list[bytes],
    architecture: str = "amd64",
) -> dict[str, Any]:
    """Write config, layers and manifest blobs; return the manifest descriptor."""
    config = json.dumps({"architecture": architecture, "os": "linux"}).encode()
    config_desc = _put_blob(layout, config, "application/vnd.oci.image.config.v1+json")
    layer_descs = [
        _put_blob(layout, layer, "application/vnd.oci.image.layer.v1.tar+gzip")
        for layer in layers
    ]
    manifest = json.dumps(
        {
            "schemaVersion": 2,
            "mediaType": OCI_MANIFEST,
            "config": config_desc,
            "layers": layer_descs,
        }
    ).encode()
    return _put_blob(layout, manifest, OCI_MANIFEST)


def write_layout(
    layout: Path,
    layers: list[bytes] | None = None,
    architectures: list[str] | None = None,
    extra_manifests: list[dict[str, Any]] | None = None,
) -> Path:
    """Write an OCI image layout with one manifest per architecture."""
    layout.mkdir(parents=True, exist_ok=True)
    layers = layers if layers is not None else [b"layer-one", b"layer-two"]
    manifests = []
    if architectures is None:
        manifests.append(write_image(layout, layers))
    else:
        for arch in architectures:
            desc = write_image(layout, [*layers, arch.encode()], arch)
            desc["platform"] = {"os": "linux", "architecture": arch}
            manifests.append(desc)
    manifests.extend(extra_manifests or [])
    index = {"schemaVersion": 2, "mediaType": OCI_INDEX, "manifests": manifests}
    (layout / "index.json").write_text(json.dumps(index))
    (layout / "oci-layout").write_text(json.dumps({"imageLayoutVersion": "1.0.0"}))
    return layout


@pytest.fixture
def oci_layout(tmp_path):
    """Factory writing OCI layouts under tmp_path."""
    counter = iter(range(1000))

    def factory(name: str | None = None, **kwargs: Any) -> Path:
        return write_layout(tmp_path / (name or f"layout-{next(counter)}"), **kwargs)

    return factory


@pytest.fixture
def make_context(tmp_path):
    """Factory for BuildContext values with a recording sink."""
    def factory(service: str = "app", **kwargs: Any) -> BuildContext:
        sink = kwargs.pop("sink", None) or RecordingSink()
        output_dir = tmp_path / "out" / service
        output_dir.mkdir(parents=True, exist_ok=True)
        values: dict[str, Any] = {
            "service": service,
            "working_dir": tmp_path,
            "platform": Platform("linux", "amd64"),
            "output_dir": output_dir,
            "progress": ServiceProgress(sink, service),
            "cancel": CancelToken(),
        }
        values.update(kwargs)
        return BuildContext(**values)

    return factory
