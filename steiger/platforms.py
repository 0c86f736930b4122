"""Target platform resolution.

The platform a service is built for comes from, in order of precedence:
1. An explicit platform (service override or --platform flag)
2. The platform of the nodes in the active Kubernetes cluster
3. The host OS/architecture

Only a malformed explicit platform is an error. An unreachable cluster
falls through to the host default.
"""

from __future__ import annotations

import json
import logging
import os
import platform as host_info
from collections import Counter
from pathlib import Path

from steiger.exec import CommandError, find_binary, run_checked
from steiger.types import SUPPORTED_ARCH, SUPPORTED_OS, Platform

logger = logging.getLogger(__name__)

# Host machine names mapped to OCI architecture names
ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "arm": "arm",
    "i386": "386",
    "i686": "386",
    "386": "386",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}

# Node labels carrying the platform of a Kubernetes node
NODE_OS_LABEL = "kubernetes.io/os"
NODE_ARCH_LABEL = "kubernetes.io/arch"


class PlatformResolutionError(Exception):
    """Raised when an explicitly requested platform is malformed."""

    def __init__(self, value: str, code: str = "invalid_platform") -> None:
        super().__init__(
            f"Invalid platform '{value}': expected <os>/<arch> with os in "
            f"{', '.join(SUPPORTED_OS)} and arch in {', '.join(SUPPORTED_ARCH)}"
        )
        self.value = value
        self.code = code


def parse_platform(value: str) -> Platform:
    """Parse an ``os/arch`` platform string.

    Args:
        value: Platform string, e.g. 'linux/arm64'.

    Returns:
        Platform instance.

    Raises:
        PlatformResolutionError: If the string is not a supported os/arch pair.
    """
    parts = value.strip().lower().split("/")
    if len(parts) != 2:
        raise PlatformResolutionError(value)
    os_name, arch = parts
    if os_name not in SUPPORTED_OS or arch not in SUPPORTED_ARCH:
        raise PlatformResolutionError(value)
    return Platform(os=os_name, arch=arch)


def host_platform(system: str | None = None, machine: str | None = None) -> Platform:
    """Return the platform of the host.

    Args:
        system: Override for platform.system() (testing).
        machine: Override for platform.machine() (testing).

    Returns:
        Host Platform.

    Raises:
        PlatformResolutionError: If the host is not a supported platform.
    """
    os_name = (system or host_info.system()).lower()
    machine_name = (machine or host_info.machine()).lower()
    arch = ARCH_ALIASES.get(machine_name)
    if os_name not in SUPPORTED_OS or arch is None:
        raise PlatformResolutionError(f"{os_name}/{machine_name}")
    return Platform(os=os_name, arch=arch)


def cluster_configured() -> bool:
    """Check whether a kubeconfig is available for cluster detection."""
    if os.environ.get("KUBECONFIG"):
        return True
    return (Path.home() / ".kube" / "config").is_file()


def platform_from_nodes(nodes: dict) -> Platform | None:
    """Pick the most common platform among the nodes of a `kubectl get nodes` list.

    Args:
        nodes: Parsed JSON output of `kubectl get nodes -o json`.

    Returns:
        Platform, or None if no node carries usable labels.
    """
    counts: Counter[Platform] = Counter()
    for item in nodes.get("items", []):
        labels = item.get("metadata", {}).get("labels", {})
        os_name = labels.get(NODE_OS_LABEL)
        arch = labels.get(NODE_ARCH_LABEL)
        if os_name in SUPPORTED_OS and arch in SUPPORTED_ARCH:
            counts[Platform(os=os_name, arch=arch)] += 1
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def detect_cluster_platform(
    kube_context: str | None = None,
    timeout: float = 10,
) -> Platform | None:
    """Infer the target platform from the active Kubernetes cluster.

    Failures are not errors: any problem reaching the cluster returns None.

    Args:
        kube_context: Optional kubeconfig context name.
        timeout: Timeout for the kubectl call in seconds.

    Returns:
        Platform of the cluster nodes, or None.
    """
    kubectl = find_binary("kubectl")
    if kubectl is None or not cluster_configured():
        logger.debug("No cluster configured, skipping platform detection")
        return None

    cmd = [kubectl, "get", "nodes", "-o", "json", f"--request-timeout={int(timeout)}s"]
    if kube_context:
        cmd.append(f"--context={kube_context}")

    try:
        result = run_checked(cmd, timeout=timeout)
        detected = platform_from_nodes(json.loads(result.stdout))
    except CommandError as e:
        logger.info("Could not reach cluster for platform detection: %s", e)
        return None
    except json.JSONDecodeError as e:
        logger.info("Unexpected kubectl output during platform detection: %s", e)
        return None

    if detected is not None:
        logger.debug("Detected cluster platform %s", detected)
    return detected


def resolve_platform(
    explicit: str | None,
    cluster_hint: Platform | None,
    host_default: Platform | None,
) -> Platform:
    """Resolve the target platform. The first available source wins.

    Args:
        explicit: Explicitly requested platform string, if any.
        cluster_hint: Platform inferred from the cluster, if any.
        host_default: Host platform, required when neither other source
            is available.

    Returns:
        Resolved Platform.

    Raises:
        PlatformResolutionError: If the explicit platform is malformed.
    """
    if explicit:
        return parse_platform(explicit)
    if cluster_hint is not None:
        return cluster_hint
    if host_default is None:
        raise PlatformResolutionError("<unknown host>", code="unknown_host")
    logger.info("No explicit or cluster platform, using host platform %s", host_default)
    return host_default


__all__ = [
    "PlatformResolutionError",
    "cluster_configured",
    "detect_cluster_platform",
    "host_platform",
    "parse_platform",
    "platform_from_nodes",
    "resolve_platform",
]
