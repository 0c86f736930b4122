"""Go package builds with ko."""

from __future__ import annotations

from steiger.builders.base import BuildContext, ProducedImage, command_failure
from steiger.exec import CommandError, find_binary, run_command
from steiger.image.layout import load_layout
from steiger.services.models import KoBuild
from steiger.types import DEFAULT_TAG, BackendKind


class KoBuilder:
    """Backend building a Go import path into an image, no Dockerfile needed."""

    kind = BackendKind.KO

    def __init__(self, binary: str) -> None:
        self.binary = binary

    @classmethod
    def try_init(cls) -> KoBuilder:
        """Locate the ko binary.

        Raises:
            CommandError: If ko is not installed.
        """
        binary = find_binary("ko")
        if binary is None:
            raise CommandError("failed to find ko binary", code="not_found")
        return cls(binary)

    def compose_command(self, spec: KoBuild, ctx: BuildContext) -> list[str]:
        """Compose the `ko build` command writing an OCI layout."""
        return [
            self.binary,
            "build",
            "--push=false",
            "--platform",
            str(ctx.platform),
            "--oci-layout-path",
            str(ctx.output_dir / "oci"),
            ctx.substitute(spec.import_path),
        ]

    def build(self, spec: KoBuild, ctx: BuildContext) -> list[ProducedImage]:
        ctx.progress.info("starting builder")

        result = run_command(
            self.compose_command(spec, ctx),
            cwd=ctx.working_dir,
            timeout=ctx.build_timeout,
            cancel=ctx.cancel,
            on_line=ctx.progress.child("ko").output,
        )
        if not result.success:
            raise command_failure(ctx, self.kind, "ko build", result)

        ctx.progress.success("build finished")
        return [
            ProducedImage(
                name=ctx.service,
                artifact=load_layout(ctx.output_dir / "oci"),
                tag=ctx.tag or DEFAULT_TAG,
            )
        ]


__all__ = ["KoBuilder"]
