"""Tests for backend dispatch and error translation."""

from unittest.mock import MagicMock, patch

import pytest

from steiger.builders.base import BuildError, ProducedImage
from steiger.builders.ko import KoBuilder
from steiger.builders.meta import MetaBuilder
from steiger.exec import CommandError
from steiger.image.layout import ImageError
from steiger.services.models import BazelBuild, DockerBuild, KoBuild, NixBuild
from steiger.types import BackendKind


@pytest.fixture
def meta():
    builder = MetaBuilder()
    builder._docker = MagicMock()
    builder._bazel = MagicMock()
    builder._ko = MagicMock()
    builder._nix = MagicMock()
    return builder


class TestDispatch:
    """Tests for MetaBuilder dispatch."""

    @pytest.mark.parametrize(
        ("spec", "attr"),
        [
            (DockerBuild(), "_docker"),
            (BazelBuild(targets={"app": "//app:image"}), "_bazel"),
            (KoBuild(), "_ko"),
            (NixBuild(packages={"app": "app"}), "_nix"),
        ],
    )
    def test_dispatches_to_backend(self, meta, make_context, spec, attr):
        """Each spec variant should reach exactly its backend."""
        produced = [MagicMock(spec=ProducedImage)]
        getattr(meta, attr).build.return_value = produced
        ctx = make_context()

        assert meta.build(spec, ctx) == produced
        getattr(meta, attr).build.assert_called_once_with(spec, ctx)
        for other in ("_docker", "_bazel", "_ko", "_nix"):
            if other != attr:
                getattr(meta, other).build.assert_not_called()

    def test_backend_located_once(self, make_context):
        """A backend should be initialised lazily and reused."""
        meta = MetaBuilder()
        with patch("steiger.builders.meta.KoBuilder.try_init") as try_init:
            try_init.return_value.build.return_value = []
            meta.build(KoBuild(), make_context())
            meta.build(KoBuild(), make_context())
        try_init.assert_called_once()


class TestErrorTranslation:
    """Tests for translating backend errors into BuildError."""

    def test_missing_tool(self, make_context):
        with patch("steiger.builders.ko.find_binary", return_value=None):
            with pytest.raises(BuildError) as exc_info:
                MetaBuilder().build(KoBuild(), make_context("api"))
        assert exc_info.value.code == "tool_not_found"
        assert exc_info.value.backend is BackendKind.KO
        assert exc_info.value.service == "api"

    @pytest.mark.parametrize(
        ("command_code", "expected"),
        [
            ("aborted", "aborted"),
            ("timeout", "timeout"),
            ("command_failed", "command_failed"),
        ],
    )
    def test_command_errors(self, meta, make_context, command_code, expected):
        meta._docker.build.side_effect = CommandError("boom", code=command_code)
        with pytest.raises(BuildError) as exc_info:
            meta.build(DockerBuild(), make_context())
        assert exc_info.value.code == expected

    def test_image_error(self, meta, make_context):
        meta._bazel.build.side_effect = ImageError("index.json missing")
        with pytest.raises(BuildError) as exc_info:
            meta.build(BazelBuild(targets={"app": "//app:image"}), make_context())
        assert exc_info.value.code == "invalid_image"
        assert "index.json missing" in exc_info.value.cause

    def test_undefined_variable(self, make_context):
        """An unknown placeholder should fail the service, not crash."""
        builder = MetaBuilder()
        builder._ko = KoBuilder("ko")
        with pytest.raises(BuildError) as exc_info:
            builder.build(KoBuild(import_path="./cmd/${missing}"), make_context())
        assert exc_info.value.code == "undefined_variable"
