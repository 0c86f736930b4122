"""Thin CLI wrapper for steiger.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

from __future__ import annotations

import contextlib
import logging
import signal
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from steiger import __version__
from steiger.builders.meta import MetaBuilder
from steiger.builds import service as build_service
from steiger.builds.manifest import (
    ExternalManifest,
    ManifestError,
    read_manifest,
    render,
    write_manifest,
)
from steiger.builds.models import RunReport
from steiger.config import Settings, get_settings, print_settings_json
from steiger.deploy import DeployError, deploy_releases
from steiger.events import ConsoleSink
from steiger.exec import CancelToken
from steiger.platforms import PlatformResolutionError, detect_cluster_platform
from steiger.registry.client import RegistryClient
from steiger.registry.credentials import DockerConfigCredentials
from steiger.services.io import ConfigError, load_config
from steiger.services.models import ProjectConfig

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="steiger",
    help="Steiger - build, push and deploy multi-service projects",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


@dataclass
class CliState:
    """Global options shared by all commands."""

    settings: Settings
    working_dir: Path
    config_path: Path


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"steiger version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def parse_variables(values: list[str] | None) -> dict[str, str]:
    """Parse repeated KEY=VALUE options."""
    variables: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint="--var")
        variables[key] = value
    return variables


@contextlib.contextmanager
def cancel_on_signals(cancel: CancelToken) -> Iterator[None]:
    """Cancel the run on SIGINT/SIGTERM instead of dying mid-build."""

    def handler(signum: int, frame: object) -> None:
        err_console.print("[yellow]Cancelling, terminating running builds...[/yellow]")
        cancel.cancel()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to steiger.yml"),
    ] = None,
    directory: Annotated[
        Path,
        typer.Option("--dir", "-d", help="Project directory"),
    ] = Path("."),
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level (default from settings)"),
    ] = None,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Steiger - build, push and deploy multi-service projects."""
    settings = get_settings()
    configure_logging((log_level or settings.log_level).upper())
    working_dir = directory.resolve()
    if config_file is None:
        config_file = working_dir / settings.config_file
    ctx.obj = CliState(settings=settings, working_dir=working_dir, config_path=config_file)


def _load(state: CliState) -> ProjectConfig:
    try:
        return load_config(state.config_path)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None


def print_report(report: RunReport) -> None:
    """Print a summary table of every service."""
    table = Table(title="Build summary")
    table.add_column("Service", style="bold")
    table.add_column("Backend")
    table.add_column("Status")
    table.add_column("Result")

    for name, entry in report.items():
        if entry.succeeded:
            status = "[green]ok[/green]"
            lines = []
            for image in entry.images:
                line = image.reference
                if any(p.skipped and p.image == image for p in entry.pushes):
                    line += " (unchanged)"
                lines.append(escape(line))
            result = "\n".join(lines)
        else:
            status = "[red]failed[/red]"
            result = escape(entry.cause or "unknown error")
        table.add_row(escape(name), entry.build.backend.value, status, result)

    console.print(table)


def _build(
    state: CliState,
    project: ProjectConfig,
    repo: str | None,
    platform: str | None,
    tag: str | None,
    output_file: Path | None,
    concurrency: int | None,
    insecure_registry: list[str] | None,
    variables: list[str] | None,
) -> tuple[RunReport, ExternalManifest]:
    settings = state.settings
    options = build_service.RunOptions(
        repo=repo,
        platform=platform,
        tag=tag,
        max_concurrency=concurrency or settings.max_concurrent_builds,
        variables=parse_variables(variables),
        working_dir=state.working_dir,
    )

    cluster_hint = None
    if platform is None and settings.detect_cluster_platform:
        cluster_hint = detect_cluster_platform(settings.kube_context, settings.command_timeout)

    registry = None
    if repo is not None:
        registry = RegistryClient(
            credentials=DockerConfigCredentials(command_timeout=settings.command_timeout),
            insecure_registries=[*settings.insecure_registries, *(insecure_registry or [])],
            timeout=settings.registry_timeout,
            max_retries=settings.registry_max_retries,
            backoff=settings.registry_backoff,
        )

    cancel = CancelToken()
    sink = ConsoleSink(console, show_output=settings.log_level == "DEBUG")
    try:
        with cancel_on_signals(cancel):
            report = build_service.run(
                project.services.values(),
                options,
                builder=MetaBuilder(settings),
                registry=registry,
                cluster_hint=cluster_hint,
                sink=sink,
                cancel=cancel,
                settings=settings,
            )
    except (ConfigError, PlatformResolutionError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        if registry is not None:
            registry.close()

    manifest = render(report)
    print_report(report)
    if output_file is not None:
        write_manifest(manifest, output_file)
        console.print(f"Build manifest written to {output_file}")
    return report, manifest


def _exit_on_failure(report: RunReport) -> None:
    if report.ok:
        return
    if report.aborted:
        console.print("[red]Build aborted[/red]")
    if report.failed:
        console.print(
            f"[red]{len(report.failed)} service(s) failed: {', '.join(report.failed)}[/red]"
        )
    raise typer.Exit(code=1)


RepoOption = Annotated[
    str | None,
    typer.Option("--repo", "-r", help="Repository to push images to"),
]
PlatformOption = Annotated[
    str | None,
    typer.Option("--platform", "-p", help="Target platform (os/arch)"),
]
TagOption = Annotated[
    str | None,
    typer.Option("--tag", "-t", help="Tag applied to every image"),
]
OutputFileOption = Annotated[
    Path | None,
    typer.Option("--output-file", "-o", help="Write the build manifest to this file"),
]
ConcurrencyOption = Annotated[
    int | None,
    typer.Option("--concurrency", "-j", min=1, help="Maximum concurrent builds"),
]
InsecureOption = Annotated[
    list[str] | None,
    typer.Option("--insecure-registry", help="Registry host reached over HTTP (repeatable)"),
]
VarOption = Annotated[
    list[str] | None,
    typer.Option("--var", help="Substitution variable KEY=VALUE (repeatable)"),
]


@app.command()
def build(
    ctx: typer.Context,
    repo: RepoOption = None,
    platform: PlatformOption = None,
    tag: TagOption = None,
    output_file: OutputFileOption = None,
    concurrency: ConcurrencyOption = None,
    insecure_registry: InsecureOption = None,
    var: VarOption = None,
) -> None:
    """Build all services and push them when --repo is given."""
    state: CliState = ctx.obj
    project = _load(state)
    report, _ = _build(
        state,
        project,
        repo,
        platform,
        tag,
        output_file,
        concurrency,
        insecure_registry,
        var,
    )
    _exit_on_failure(report)


def _deploy(state: CliState, project: ProjectConfig, manifest: ExternalManifest) -> None:
    try:
        deploy_releases(
            project.deploy,
            manifest,
            working_dir=state.working_dir,
            sink=ConsoleSink(console, show_output=state.settings.log_level == "DEBUG"),
        )
    except DeployError as e:
        console.print(f"[red]Deployment failed: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None
    console.print("[green]Deployment finished[/green]")


@app.command()
def deploy(
    ctx: typer.Context,
    input_file: Annotated[
        Path,
        typer.Option("--input-file", "-i", help="Build manifest written by 'build'"),
    ],
) -> None:
    """Deploy the releases with the images of a build manifest."""
    state: CliState = ctx.obj
    project = _load(state)
    try:
        manifest = read_manifest(input_file)
    except ManifestError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None
    _deploy(state, project, manifest)


@app.command()
def run(
    ctx: typer.Context,
    repo: RepoOption = None,
    platform: PlatformOption = None,
    tag: TagOption = None,
    output_file: OutputFileOption = None,
    concurrency: ConcurrencyOption = None,
    insecure_registry: InsecureOption = None,
    var: VarOption = None,
) -> None:
    """Build, push and deploy in sequence."""
    state: CliState = ctx.obj
    project = _load(state)
    report, manifest = _build(
        state,
        project,
        repo,
        platform,
        tag,
        output_file,
        concurrency,
        insecure_registry,
        var,
    )
    if not report.ok:
        console.print("[yellow]Skipping deployment because the build failed[/yellow]")
        _exit_on_failure(report)
    _deploy(state, project, manifest)


@app.command()
def config(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    state: CliState = ctx.obj
    settings = state.settings
    if json_output:
        console.print(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Project:[/bold]")
    console.print(f"  Directory:           {state.working_dir}")
    console.print(f"  Config file:         {state.config_path}")
    console.print(f"  Builder instance:    {settings.builder_name}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Cluster detection:   {settings.detect_cluster_platform}")
    console.print(f"  Kube context:        {settings.kube_context or '(current)'}")
    console.print(f"  Max builds:          {settings.max_concurrent_builds or 'unbounded'}")
    console.print()
    console.print("[bold]Registry:[/bold]")
    insecure = ", ".join(settings.insecure_registries) or "(none)"
    console.print(f"  Insecure registries: {insecure}")
    console.print(f"  Max retries:         {settings.registry_max_retries}")
    console.print(f"  Request timeout:     {settings.registry_timeout}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Build timeout:       {settings.build_timeout or 'none'}")
    console.print(f"  Command timeout:     {settings.command_timeout}")


if __name__ == "__main__":
    app()
