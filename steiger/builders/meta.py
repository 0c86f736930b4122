"""Dispatch of build specs to their backend.

The set of backends is closed: every BuildSpec variant maps to exactly
one builder. Backends are located lazily, once per process, the first
time a service needs them.
"""

from __future__ import annotations

import logging
import threading
from typing import assert_never

from steiger.builders.base import (
    BuildContext,
    BuildError,
    ProducedImage,
    UndefinedVariableError,
)
from steiger.builders.bazel import BazelBuilder
from steiger.builders.docker import DockerBuilder
from steiger.builders.ko import KoBuilder
from steiger.builders.nix import NixBuilder
from steiger.config import Settings
from steiger.exec import CommandError
from steiger.image.layout import ImageError
from steiger.services.models import BazelBuild, BuildSpec, DockerBuild, KoBuild, NixBuild
from steiger.types import BackendKind

logger = logging.getLogger(__name__)

# CommandError codes mapped to BuildError codes
_COMMAND_CODES = {
    "not_found": "tool_not_found",
    "aborted": "aborted",
    "timeout": "timeout",
}


class MetaBuilder:
    """Builds any BuildSpec by delegating to the matching backend."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        self._lock = threading.Lock()
        self._docker: DockerBuilder | None = None
        self._bazel: BazelBuilder | None = None
        self._ko: KoBuilder | None = None
        self._nix: NixBuilder | None = None

    def docker(self) -> DockerBuilder:
        with self._lock:
            if self._docker is None:
                self._docker = DockerBuilder.try_init(
                    self.settings.builder_name, self.settings.command_timeout
                )
            return self._docker

    def bazel(self) -> BazelBuilder:
        with self._lock:
            if self._bazel is None:
                self._bazel = BazelBuilder.try_init()
            return self._bazel

    def ko(self) -> KoBuilder:
        with self._lock:
            if self._ko is None:
                self._ko = KoBuilder.try_init()
            return self._ko

    def nix(self) -> NixBuilder:
        with self._lock:
            if self._nix is None:
                self._nix = NixBuilder.try_init()
            return self._nix

    def _dispatch(self, spec: BuildSpec, ctx: BuildContext) -> list[ProducedImage]:
        if isinstance(spec, DockerBuild):
            return self.docker().build(spec, ctx)
        if isinstance(spec, BazelBuild):
            return self.bazel().build(spec, ctx)
        if isinstance(spec, KoBuild):
            return self.ko().build(spec, ctx)
        if isinstance(spec, NixBuild):
            return self.nix().build(spec, ctx)
        assert_never(spec)

    def build(self, spec: BuildSpec, ctx: BuildContext) -> list[ProducedImage]:
        """Build a service with its backend.

        Args:
            spec: The service's build specification.
            ctx: Build context.

        Returns:
            Images produced by the backend.

        Raises:
            BuildError: For any failure of the backend, its tool or its output.
        """
        backend: BackendKind = spec.kind
        try:
            return self._dispatch(spec, ctx)
        except CommandError as e:
            code = _COMMAND_CODES.get(e.code, "command_failed")
            if code == "tool_not_found":
                ctx.progress.failure(str(e))
            raise BuildError(ctx.service, backend, str(e), code=code) from e
        except ImageError as e:
            ctx.progress.failure(f"unusable image output: {e}")
            raise BuildError(
                ctx.service, backend, f"unusable image output: {e}", code="invalid_image"
            ) from e
        except UndefinedVariableError as e:
            raise BuildError(
                ctx.service, backend, str(e), code="undefined_variable"
            ) from e


__all__ = ["MetaBuilder"]
