"""Build orchestration.

This module provides the high-level build API:
- run(): build every service concurrently and push the results
- Pre-flight validation of the service set (fatal before any build)
- Per-service isolation: a failing unit never affects its siblings
- Cancellation that yields a partial, but complete, RunReport
"""

from __future__ import annotations

import logging
import tempfile
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from steiger.builders.base import BuildContext, BuildError, ProducedImage, artifact_name
from steiger.builds.models import BuildResult, RunReport, RunReportBuilder, ServiceReport
from steiger.config import Settings
from steiger.events import EventLevel, LoggingSink, ProgressEvent, ProgressSink, ServiceProgress
from steiger.exec import CancelToken
from steiger.image.layout import ImageArtifact
from steiger.platforms import host_platform, parse_platform, resolve_platform
from steiger.registry.client import PushError, Repository
from steiger.services.io import ConfigError
from steiger.services.models import BazelBuild, BuildSpec, NixBuild, ServiceSpec
from steiger.types import ImageRef, Platform, PushOutcome

logger = logging.getLogger(__name__)

# Service name used for run-level progress events
META_SERVICE = "meta"


class ServiceBuilder(Protocol):
    """Anything that builds a BuildSpec (MetaBuilder in production)."""

    def build(self, spec: BuildSpec, ctx: BuildContext) -> list[ProducedImage]: ...


class ImagePusher(Protocol):
    """Anything that pushes artifacts (RegistryClient in production)."""

    def ensure_pushed(
        self,
        artifact: ImageArtifact,
        repo: str,
        name: str,
        tag: str | None = None,
        insecure: bool = False,
    ) -> PushOutcome: ...


@dataclass(frozen=True)
class RunOptions:
    """Options of a build run.

    Attributes:
        repo: Destination repository; images are not pushed when None.
        platform: Explicit platform for services without an override.
        tag: Tag applied to every produced image.
        max_concurrency: Upper bound on in-flight units (None = unbounded).
        insecure: Push to the destination registry over plain HTTP.
        variables: Extra substitution variables (override seeded ones).
        working_dir: Project directory.
    """

    repo: str | None = None
    platform: str | None = None
    tag: str | None = None
    max_concurrency: int | None = None
    insecure: bool = False
    variables: Mapping[str, str] = field(default_factory=dict)
    working_dir: Path = field(default_factory=Path.cwd)


def image_names(service: ServiceSpec) -> list[str]:
    """Names of the images a service produces."""
    build = service.build
    if isinstance(build, BazelBuild):
        artifacts = list(build.targets)
    elif isinstance(build, NixBuild):
        artifacts = list(build.packages)
    else:
        return [service.name]
    return [artifact_name(service.name, a, len(artifacts)) for a in artifacts]


def preflight(
    services: Iterable[ServiceSpec], options: RunOptions
) -> dict[str, ServiceSpec]:
    """Validate the service set before anything runs.

    Returns:
        Services keyed by name.

    Raises:
        ConfigError: On duplicate service names, colliding image names,
            an invalid repository or an invalid concurrency bound.
        PlatformResolutionError: On a malformed explicit platform.
    """
    by_name: dict[str, ServiceSpec] = {}
    for service in services:
        if service.name in by_name:
            raise ConfigError(
                f"Duplicate service name: {service.name}", code="duplicate_service"
            )
        by_name[service.name] = service

    images: dict[str, str] = {}
    for service in by_name.values():
        for image in image_names(service):
            owner = images.setdefault(image, service.name)
            if owner != service.name:
                raise ConfigError(
                    f"Image name {image} produced by both {owner} and {service.name}",
                    code="duplicate_image",
                )

    if options.platform:
        parse_platform(options.platform)
    for service in by_name.values():
        if service.platform:
            parse_platform(service.platform)

    if options.repo is not None:
        try:
            Repository.parse(options.repo)
        except PushError as e:
            raise ConfigError(str(e), code="invalid_repository") from e

    if options.max_concurrency is not None and options.max_concurrency < 1:
        raise ConfigError(
            f"Concurrency must be at least 1, got {options.max_concurrency}",
            code="invalid_concurrency",
        )
    return by_name


def seed_variables(
    service: str, platform: Platform, extra: Mapping[str, str]
) -> dict[str, str]:
    """Return the substitution table of a service; extra entries win."""
    variables = {
        "platform": str(platform),
        "os": platform.os,
        "arch": platform.arch,
        "service": service,
    }
    variables.update(extra)
    return variables


def _aborted(service: ServiceSpec) -> ServiceReport:
    error = BuildError(service.name, service.backend, "run aborted", code="aborted")
    return ServiceReport(BuildResult.failure(error))


@dataclass
class _Run:
    """State shared (read-only) by the units of one run."""

    options: RunOptions
    builder: ServiceBuilder
    registry: ImagePusher | None
    default_platform: Platform | None
    sink: ProgressSink
    cancel: CancelToken
    settings: Settings
    scratch: Path

    def platform_for(self, service: ServiceSpec) -> Platform:
        if service.platform:
            return parse_platform(service.platform)
        assert self.default_platform is not None
        return self.default_platform

    def build_unit(self, service: ServiceSpec) -> ServiceReport:
        """Build and push one service. Never raises."""
        if self.cancel.cancelled:
            return _aborted(service)

        progress = ServiceProgress(self.sink, service.name)
        platform = self.platform_for(service)
        if service.platform:
            progress.info(f"using platform override: {platform}")

        output_dir = self.scratch / service.name
        output_dir.mkdir(parents=True, exist_ok=True)
        ctx = BuildContext(
            service=service.name,
            working_dir=self.options.working_dir,
            platform=platform,
            output_dir=output_dir,
            progress=progress,
            cancel=self.cancel,
            variables=seed_variables(service.name, platform, self.options.variables),
            tag=self.options.tag,
            build_timeout=self.settings.build_timeout,
            command_timeout=self.settings.command_timeout,
        )

        try:
            produced = self.builder.build(service.build, ctx)
        except BuildError as e:
            logger.error("Build failed: %s", e)
            return ServiceReport(BuildResult.failure(e))
        except Exception as e:
            logger.exception("Unexpected error building %s", service.name)
            progress.failure(f"internal error: {e}")
            error = BuildError(service.name, service.backend, str(e), code="internal_error")
            return ServiceReport(BuildResult.failure(error))

        result = BuildResult.success(
            service.name,
            service.backend,
            (
                ImageRef(
                    name=image.name,
                    repository=image.name,
                    digest=image.artifact.digest,
                    tag=image.tag,
                )
                for image in produced
            ),
        )

        if self.options.repo is None or self.registry is None:
            return ServiceReport(result)
        return self.push_unit(service, result, produced, progress.child("push"))

    def push_unit(
        self,
        service: ServiceSpec,
        result: BuildResult,
        produced: list[ProducedImage],
        progress: ServiceProgress,
    ) -> ServiceReport:
        assert self.options.repo is not None and self.registry is not None
        pushes: list[PushOutcome] = []
        for image in produced:
            if self.cancel.cancelled:
                error = PushError("run aborted before push", code="aborted")
                return ServiceReport(result, tuple(pushes), error)
            try:
                outcome = self.registry.ensure_pushed(
                    image.artifact,
                    self.options.repo,
                    image.name,
                    image.tag,
                    self.options.insecure,
                )
            except PushError as e:
                logger.error("Push of %s failed: %s", image.name, e)
                progress.failure(f"push of {image.name} failed: {e}")
                return ServiceReport(result, tuple(pushes), e)

            if outcome.skipped:
                progress.info(f"{outcome.reference} already present, skipped")
            else:
                progress.success(
                    f"pushed {outcome.reference} ({outcome.blobs_uploaded} blob(s))"
                )
            pushes.append(outcome)
        return ServiceReport(result, tuple(pushes))


def run(
    services: Iterable[ServiceSpec],
    options: RunOptions,
    *,
    builder: ServiceBuilder,
    registry: ImagePusher | None = None,
    cluster_hint: Platform | None = None,
    host: Platform | None = None,
    sink: ProgressSink | None = None,
    cancel: CancelToken | None = None,
    settings: Settings | None = None,
) -> RunReport:
    """Build (and optionally push) every service.

    Units run concurrently, bounded by options.max_concurrency. The call
    returns once every unit has concluded; when cancelled, units that had
    not started are recorded as aborted.

    Args:
        services: The validated service set.
        options: Run options.
        builder: Dispatcher for build specs.
        registry: Registry client, required when options.repo is set.
        cluster_hint: Platform detected from the cluster, if any.
        host: Host platform (detected when None and needed).
        sink: Progress sink (logging by default).
        cancel: Cancellation token.
        settings: Settings for timeouts.

    Returns:
        Complete RunReport, one entry per service.

    Raises:
        ConfigError: If the service set is invalid.
        PlatformResolutionError: If an explicit platform is malformed, or
            no platform can be determined for a service.
    """
    by_name = preflight(services, options)
    settings = settings or Settings()
    sink = sink or LoggingSink()
    cancel = cancel or CancelToken()
    if options.repo is not None and registry is None:
        raise ConfigError("A registry client is required to push", code="no_registry")

    # Services without an override share one resolved platform
    default_platform = None
    if any(not s.platform for s in by_name.values()):
        if host is None and not options.platform and cluster_hint is None:
            host = host_platform()
        default_platform = resolve_platform(options.platform, cluster_hint, host)
        sink.emit(
            ProgressEvent(META_SERVICE, EventLevel.INFO, f"target platform: {default_platform}")
        )

    collector = RunReportBuilder(by_name)
    if not by_name:
        return collector.freeze()

    workers = options.max_concurrency or len(by_name)
    with tempfile.TemporaryDirectory(prefix="steiger-") as scratch:
        state = _Run(
            options=options,
            builder=builder,
            registry=registry,
            default_platform=default_platform,
            sink=sink,
            cancel=cancel,
            settings=settings,
            scratch=Path(scratch),
        )
        logger.info("Building %d service(s) with %d worker(s)", len(by_name), workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="steiger") as pool:
            futures = {
                pool.submit(state.build_unit, service): name
                for name, service in sorted(by_name.items())
            }
            for future in as_completed(futures):
                collector.record(futures[future], future.result())

    report = collector.freeze(aborted=cancel.cancelled)
    if report.failed:
        logger.error("%d of %d service(s) failed", len(report.failed), len(report))
    else:
        logger.info("All %d service(s) built", len(report))
    return report


__all__ = [
    "ImagePusher",
    "RunOptions",
    "ServiceBuilder",
    "preflight",
    "run",
    "seed_variables",
]
