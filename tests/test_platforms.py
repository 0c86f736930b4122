"""Tests for platform resolution."""

import json
from unittest.mock import patch

import pytest

from steiger.exec import CommandError, CommandResult
from steiger.platforms import (
    PlatformResolutionError,
    detect_cluster_platform,
    host_platform,
    parse_platform,
    platform_from_nodes,
    resolve_platform,
)
from steiger.types import Platform

AMD64 = Platform("linux", "amd64")
ARM64 = Platform("linux", "arm64")


def _nodes(*platforms: tuple[str, str]) -> dict:
    return {
        "items": [
            {"metadata": {"labels": {"kubernetes.io/os": os_, "kubernetes.io/arch": arch}}}
            for os_, arch in platforms
        ]
    }


class TestParsePlatform:
    """Tests for parse_platform function."""

    def test_valid(self):
        """Should parse os/arch."""
        assert parse_platform("linux/arm64") == ARM64

    def test_normalizes_case(self):
        """Should accept upper case and whitespace."""
        assert parse_platform(" Linux/AMD64 ") == AMD64

    @pytest.mark.parametrize("value", ["linux", "linux/arm64/v8", "plan9/amd64", "linux/sparc", ""])
    def test_invalid(self, value):
        """Should reject malformed or unsupported platforms."""
        with pytest.raises(PlatformResolutionError) as exc_info:
            parse_platform(value)
        assert exc_info.value.code == "invalid_platform"


class TestHostPlatform:
    """Tests for host_platform function."""

    def test_maps_machine_names(self):
        """Should map uname machine names to OCI arch names."""
        assert host_platform("Linux", "x86_64") == AMD64
        assert host_platform("Darwin", "arm64") == Platform("darwin", "arm64")
        assert host_platform("Linux", "aarch64") == ARM64

    def test_unsupported_host(self):
        """Should raise for an unknown machine."""
        with pytest.raises(PlatformResolutionError):
            host_platform("Linux", "mips")


class TestPlatformFromNodes:
    """Tests for platform_from_nodes function."""

    def test_majority_wins(self):
        """Should pick the most common node platform."""
        nodes = _nodes(("linux", "arm64"), ("linux", "amd64"), ("linux", "arm64"))
        assert platform_from_nodes(nodes) == ARM64

    def test_no_usable_labels(self):
        """Should return None without labelled nodes."""
        assert platform_from_nodes({"items": [{"metadata": {}}]}) is None
        assert platform_from_nodes({}) is None


class TestDetectClusterPlatform:
    """Tests for detect_cluster_platform function."""

    def test_detects_from_kubectl(self):
        """Should parse kubectl output."""
        output = json.dumps(_nodes(("linux", "arm64")))
        with (
            patch("steiger.platforms.find_binary", return_value="/usr/bin/kubectl"),
            patch("steiger.platforms.cluster_configured", return_value=True),
            patch(
                "steiger.platforms.run_checked",
                return_value=CommandResult("kubectl", 0, output, "", 0.1),
            ) as run,
        ):
            assert detect_cluster_platform(kube_context="prod") == ARM64
        cmd = run.call_args[0][0]
        assert cmd[:3] == ["/usr/bin/kubectl", "get", "nodes"]
        assert "--context=prod" in cmd

    def test_unreachable_cluster_is_not_fatal(self):
        """Should return None when kubectl fails."""
        with (
            patch("steiger.platforms.find_binary", return_value="/usr/bin/kubectl"),
            patch("steiger.platforms.cluster_configured", return_value=True),
            patch(
                "steiger.platforms.run_checked",
                side_effect=CommandError("connection refused", code="command_failed"),
            ),
        ):
            assert detect_cluster_platform() is None

    def test_no_kubectl(self):
        """Should return None without kubectl."""
        with patch("steiger.platforms.find_binary", return_value=None):
            assert detect_cluster_platform() is None


class TestResolvePlatform:
    """Precedence: explicit > cluster hint > host default."""

    def test_explicit_wins(self):
        """An explicit platform should beat both other sources."""
        result = resolve_platform("linux/arm", cluster_hint=ARM64, host_default=AMD64)
        assert result == Platform("linux", "arm")

    def test_cluster_beats_host(self):
        """A cluster hint should beat the host default."""
        assert resolve_platform(None, cluster_hint=ARM64, host_default=AMD64) == ARM64

    def test_host_fallback(self):
        """The host default should be used when nothing else is known."""
        assert resolve_platform(None, cluster_hint=None, host_default=AMD64) == AMD64

    def test_malformed_explicit_is_fatal(self):
        """A malformed explicit platform should raise even with other sources."""
        with pytest.raises(PlatformResolutionError):
            resolve_platform("linux-arm64", cluster_hint=ARM64, host_default=AMD64)
