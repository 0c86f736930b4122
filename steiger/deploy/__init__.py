"""Deployment of built images.

This module provides deploy_releases(), which validates every configured
release and then deploys them concurrently, reporting all failures
together.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from steiger.builds.manifest import ExternalManifest
from steiger.deploy.helm import DeployError, HelmDeployer, camel_case
from steiger.events import LoggingSink, ProgressSink, ServiceProgress
from steiger.exec import CancelToken
from steiger.services.models import HelmRelease

logger = logging.getLogger(__name__)


def deploy_releases(
    releases: Mapping[str, HelmRelease],
    manifest: ExternalManifest,
    *,
    working_dir: Path | None = None,
    deployer: HelmDeployer | None = None,
    sink: ProgressSink | None = None,
    cancel: CancelToken | None = None,
    timeout: float | None = None,
) -> None:
    """Deploy every release with the images of a build manifest.

    Args:
        releases: Releases keyed by name.
        manifest: Build manifest produced by a build run.
        working_dir: Project directory chart paths are relative to.
        deployer: Helm deployer (located on PATH when None).
        sink: Progress sink.
        cancel: Cancellation token.
        timeout: Timeout per helm invocation.

    Raises:
        DeployError: If validation fails, or listing every failed release
            with code "deploy_failed".
    """
    if not releases:
        logger.info("No releases configured, nothing to deploy")
        return

    sink = sink or LoggingSink()
    meta = ServiceProgress(sink, "meta", "deploy")
    meta.info("validating releases")

    if deployer is None:
        deployer = HelmDeployer.try_init(working_dir)
    for release in releases.values():
        deployer.validate(release)

    started = time.monotonic()
    meta.info("starting deployment")
    errors: list[DeployError] = []
    with ThreadPoolExecutor(max_workers=len(releases)) as pool:
        futures = {
            pool.submit(
                deployer.deploy,
                release,
                manifest,
                ServiceProgress(sink, name),
                cancel,
                timeout,
            ): name
            for name, release in sorted(releases.items())
        }
        for future in as_completed(futures):
            try:
                future.result()
            except DeployError as e:
                logger.error("Release %s failed: %s", futures[future], e)
                errors.append(e)

    if errors:
        meta.failure("deployment failed")
        details = "\n".join(f"- {e}" for e in errors)
        raise DeployError(
            f"{len(errors)} of {len(releases)} deployment(s) failed:\n{details}",
            code="deploy_failed",
        )

    meta.success(f"deployment completed in {time.monotonic() - started:.1f}s")


__all__ = ["DeployError", "HelmDeployer", "camel_case", "deploy_releases"]
