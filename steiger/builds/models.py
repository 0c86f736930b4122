"""Per-service results of a build run.

This module defines BuildResult, ServiceReport and the frozen RunReport
handed to the metadata writer and the deploy step. RunReportBuilder
collects results as units finish: every service slot is written exactly
once, and freezing requires every slot to be filled.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from steiger.builders.base import BuildError
from steiger.registry.client import PushError
from steiger.types import BackendKind, BuildStatus, ImageRef, PushOutcome


@dataclass(frozen=True)
class BuildResult:
    """Outcome of one service's build.

    Attributes:
        service: Service name.
        backend: Backend the service is bound to.
        status: Succeeded or failed.
        images: Produced images (empty on failure).
        error: Backend-attributed failure, if any.
    """

    service: str
    backend: BackendKind
    status: BuildStatus
    images: tuple[ImageRef, ...] = ()
    error: BuildError | None = None

    @classmethod
    def success(
        cls, service: str, backend: BackendKind, images: Iterable[ImageRef]
    ) -> BuildResult:
        return cls(service, backend, BuildStatus.SUCCEEDED, tuple(images))

    @classmethod
    def failure(cls, error: BuildError) -> BuildResult:
        return cls(error.service, error.backend, BuildStatus.FAILED, error=error)

    @property
    def succeeded(self) -> bool:
        return self.status == BuildStatus.SUCCEEDED


@dataclass(frozen=True)
class ServiceReport:
    """Final entry of a service in the run report.

    Attributes:
        build: The build result.
        pushes: Push outcome per produced image (empty when not pushed).
        push_error: Registry failure after a successful build, if any.
    """

    build: BuildResult
    pushes: tuple[PushOutcome, ...] = ()
    push_error: PushError | None = None

    @property
    def succeeded(self) -> bool:
        return self.build.succeeded and self.push_error is None

    @property
    def cause(self) -> str | None:
        """Human-readable failure cause."""
        if self.build.error is not None:
            return self.build.error.cause
        if self.push_error is not None:
            return f"push failed: {self.push_error}"
        return None

    @property
    def images(self) -> tuple[ImageRef, ...]:
        """Final image references, remote when pushed."""
        if self.pushes:
            return tuple(outcome.image for outcome in self.pushes)
        return self.build.images


class RunReport(Mapping[str, ServiceReport]):
    """Frozen, complete mapping of service name to its report, ordered by name."""

    def __init__(self, entries: Mapping[str, ServiceReport], aborted: bool = False) -> None:
        self._entries = MappingProxyType(dict(sorted(entries.items())))
        self.aborted = aborted

    def __getitem__(self, key: str) -> ServiceReport:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"RunReport({dict(self._entries)!r}, aborted={self.aborted})"

    @property
    def succeeded(self) -> list[str]:
        return [name for name, entry in self._entries.items() if entry.succeeded]

    @property
    def failed(self) -> list[str]:
        return [name for name, entry in self._entries.items() if not entry.succeeded]

    @property
    def ok(self) -> bool:
        """True when every service succeeded and the run was not aborted."""
        return not self.aborted and not self.failed


class RunReportBuilder:
    """Collects service reports while units run."""

    def __init__(self, services: Iterable[str]) -> None:
        self._expected = frozenset(services)
        self._entries: dict[str, ServiceReport] = {}
        self._lock = threading.Lock()

    def record(self, name: str, report: ServiceReport) -> None:
        """Record the report of a service.

        Raises:
            KeyError: If the service is not part of the run.
            ValueError: If the service already has a report.
        """
        if name not in self._expected:
            raise KeyError(f"Unknown service: {name}")
        with self._lock:
            if name in self._entries:
                raise ValueError(f"Result for service {name} already recorded")
            self._entries[name] = report

    def recorded(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def freeze(self, aborted: bool = False) -> RunReport:
        """Return the frozen report.

        Raises:
            ValueError: If a service has no report yet.
        """
        with self._lock:
            missing = self._expected - self._entries.keys()
            if missing:
                raise ValueError(f"Missing results for: {', '.join(sorted(missing))}")
            return RunReport(self._entries, aborted=aborted)


__all__ = [
    "BuildResult",
    "RunReport",
    "RunReportBuilder",
    "ServiceReport",
]
