"""Builder contract shared by all backends.

A builder maps a service's BuildSpec plus a BuildContext (working
directory, target platform, variable table) to one or more produced
images, each stored as an OCI image layout.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from steiger.events import ServiceProgress
from steiger.exec import CancelToken, CommandResult
from steiger.image.layout import ImageArtifact
from steiger.types import BackendKind, Platform

_VARIABLE_PATTERN = re.compile(r"\$(?:(\$)|\{([A-Za-z_][A-Za-z0-9_]*)\})")


class BuildError(Exception):
    """Raised when a backend fails to build a service."""

    def __init__(
        self,
        service: str,
        backend: BackendKind | str,
        cause: str,
        code: str = "build_failed",
    ) -> None:
        self.service = service
        self.backend = BackendKind(backend)
        self.cause = cause
        self.code = code
        super().__init__(f"{service} ({self.backend.value}): {cause}")


class UndefinedVariableError(Exception):
    """Raised when a spec field references an unknown variable."""

    def __init__(self, name: str, value: str) -> None:
        super().__init__(f"Undefined variable '${{{name}}}' in '{value}'")
        self.name = name
        self.value = value


def substitute(value: str, variables: Mapping[str, str]) -> str:
    """Expand ``${name}`` placeholders; ``$$`` is a literal dollar.

    Raises:
        UndefinedVariableError: If a placeholder has no value.
    """

    def replace(match: re.Match[str]) -> str:
        if match.group(1):
            return "$"
        name = match.group(2)
        if name not in variables:
            raise UndefinedVariableError(name, value)
        return variables[name]

    return _VARIABLE_PATTERN.sub(replace, value)


def artifact_name(service: str, artifact: str, count: int) -> str:
    """Name of a produced image; namespaced when a service has several."""
    if count == 1:
        return service
    return f"{service}-{artifact}"


@dataclass(frozen=True)
class BuildContext:
    """Everything a backend needs besides the spec itself.

    Attributes:
        service: Service name.
        working_dir: Project directory the build runs in.
        platform: Resolved target platform.
        output_dir: Scratch directory owned by this service's build.
        progress: Progress reporter for the service.
        cancel: Token that aborts running commands.
        variables: Values for ``${name}`` placeholders.
        tag: Explicitly requested tag, if any.
        build_timeout: Timeout for the main build command.
        command_timeout: Timeout for helper commands.
    """

    service: str
    working_dir: Path
    platform: Platform
    output_dir: Path
    progress: ServiceProgress
    cancel: CancelToken
    variables: Mapping[str, str] = field(default_factory=dict)
    tag: str | None = None
    build_timeout: float | None = None
    command_timeout: float = 60

    def substitute(self, value: str, extra: Mapping[str, str] | None = None) -> str:
        """Expand placeholders in a spec field."""
        if extra:
            return substitute(value, {**self.variables, **extra})
        return substitute(value, self.variables)

    def resolve_path(self, value: str) -> Path:
        """Return a spec path relative to the working directory."""
        path = Path(value)
        if path.is_absolute():
            return path
        return self.working_dir / path


@dataclass(frozen=True)
class ProducedImage:
    """One image produced by a backend."""

    name: str
    artifact: ImageArtifact
    tag: str | None = None


class Builder(Protocol):
    """Capability implemented by every backend."""

    kind: BackendKind

    def build(self, spec: object, ctx: BuildContext) -> list[ProducedImage]:
        """Build the service and return its images."""
        ...


def command_failure(
    ctx: BuildContext,
    backend: BackendKind,
    tool: str,
    result: CommandResult,
) -> BuildError:
    """Report a failed build command and return the matching BuildError."""
    ctx.progress.failure(f"build failed with exit code: {result.exit_code}")
    cause = f"'{tool}' failed with exit code {result.exit_code}"
    detail = result.diagnostic()
    if detail:
        cause = f"{cause}\n{detail}"
    return BuildError(ctx.service, backend, cause, code="command_failed")


__all__ = [
    "BuildContext",
    "BuildError",
    "Builder",
    "ProducedImage",
    "UndefinedVariableError",
    "artifact_name",
    "command_failure",
    "substitute",
]
