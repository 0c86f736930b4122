"""Tests for the nix backend."""

import json
from unittest.mock import patch

import pytest
from conftest import write_layout

from steiger.builders.base import BuildError
from steiger.builders.nix import NixBuilder, parse_out_paths, platform_to_system
from steiger.exec import CommandResult
from steiger.services.models import NixBuild
from steiger.types import Platform


def _ok(stdout: str = "") -> CommandResult:
    return CommandResult("nix", 0, stdout, "", 0.1)


class TestPlatformToSystem:
    """Tests for platform_to_system function."""

    @pytest.mark.parametrize(
        ("platform", "expected"),
        [
            (Platform("linux", "amd64"), "x86_64-linux"),
            (Platform("linux", "arm64"), "aarch64-linux"),
            (Platform("darwin", "arm64"), "aarch64-darwin"),
        ],
    )
    def test_known_platforms(self, platform, expected):
        assert platform_to_system(platform) == expected

    def test_unsupported_os(self):
        """Windows has no nix system."""
        with pytest.raises(ValueError):
            platform_to_system(Platform("windows", "amd64"))

    def test_unknown_arch(self):
        with pytest.raises(ValueError):
            platform_to_system(Platform("linux", "mips"))


class TestParseOutPaths:
    """Tests for parse_out_paths function."""

    def test_collects_out_outputs(self):
        output = json.dumps(
            [
                {"drvPath": "/nix/store/a.drv", "outputs": {"out": "/nix/store/a"}},
                {"drvPath": "/nix/store/b.drv", "outputs": {"dev": "/nix/store/b-dev"}},
            ]
        )
        assert parse_out_paths(output) == ["/nix/store/a"]


class TestNixBuilder:
    """Tests for NixBuilder.build."""

    @pytest.fixture(autouse=True)
    def _host(self):
        with patch(
            "steiger.builders.nix.host_platform", return_value=Platform("linux", "amd64")
        ):
            yield

    def test_build_packages(self, make_context, tmp_path):
        """Each package should be built for the target system."""
        server = write_layout(tmp_path / "store" / "server", layers=[b"server"])
        worker = write_layout(tmp_path / "store" / "worker", layers=[b"worker"])
        outputs = {"server": server, "worker": worker}

        def fake_build(cmd, **kwargs):
            attr = cmd[-1].rsplit(".", 1)[-1]
            return _ok(json.dumps([{"outputs": {"out": str(outputs[attr])}}]))

        ctx = make_context("jobs", platform=Platform("linux", "arm64"))
        spec = NixBuild(packages={"worker": "worker", "server": "server"})
        with (
            patch(
                "steiger.builders.nix.run_checked",
                return_value=_ok(json.dumps(["aarch64-linux", "x86_64-linux"])),
            ),
            patch("steiger.builders.nix.run_command", side_effect=fake_build) as build,
        ):
            images = NixBuilder("nix").build(spec, ctx)

        assert [i.name for i in images] == ["jobs-server", "jobs-worker"]
        assert all(i.tag is None for i in images)
        installables = [c[0][0][-1] for c in build.call_args_list]
        assert installables == [
            ".#packages.aarch64-linux.server",
            ".#packages.aarch64-linux.worker",
        ]

    def test_system_not_provided(self, make_context):
        """A flake without packages for the target system should fail."""
        ctx = make_context("jobs", platform=Platform("linux", "arm64"))
        with (
            patch(
                "steiger.builders.nix.run_checked",
                return_value=_ok(json.dumps(["x86_64-linux"])),
            ),
            patch("steiger.builders.nix.run_command") as build,
        ):
            with pytest.raises(BuildError) as exc_info:
                NixBuilder("nix").build(NixBuild(packages={"app": "app"}), ctx)
        assert exc_info.value.code == "missing_platform"
        build.assert_not_called()

    def test_unsupported_platform(self, make_context):
        ctx = make_context("jobs", platform=Platform("windows", "amd64"))
        with pytest.raises(BuildError) as exc_info:
            NixBuilder("nix").build(NixBuild(packages={"app": "app"}), ctx)
        assert exc_info.value.code == "missing_platform"

    def test_custom_prefix_skips_detection(self, make_context, tmp_path):
        """A custom attribute prefix should be used as-is."""
        layout = write_layout(tmp_path / "store" / "app")
        ctx = make_context("jobs")
        spec = NixBuild(
            packages={"app": "image"},
            attribute_prefix="legacyPackages.${hostSystem}.images",
        )
        with (
            patch("steiger.builders.nix.run_checked") as detect,
            patch(
                "steiger.builders.nix.run_command",
                return_value=_ok(json.dumps([{"outputs": {"out": str(layout)}}])),
            ) as build,
        ):
            images = NixBuilder("nix").build(spec, ctx)

        detect.assert_not_called()
        assert build.call_args[0][0][-1] == ".#legacyPackages.x86_64-linux.images.image"
        assert [i.name for i in images] == ["jobs"]

    def test_no_output(self, make_context):
        ctx = make_context("jobs")
        with (
            patch(
                "steiger.builders.nix.run_checked",
                return_value=_ok(json.dumps(["x86_64-linux"])),
            ),
            patch("steiger.builders.nix.run_command", return_value=_ok("[]")),
        ):
            with pytest.raises(BuildError) as exc_info:
                NixBuilder("nix").build(NixBuild(packages={"app": "app"}), ctx)
        assert exc_info.value.code == "missing_artifact"
