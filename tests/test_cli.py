"""Tests for the CLI.

Builds and deployments are patched out; these tests cover option
handling, output and exit codes.
"""

import json
from unittest.mock import patch

import pytest
import typer
from typer.testing import CliRunner

from steiger import __version__
from steiger.builders.base import BuildError
from steiger.builds.manifest import BuildEntry, ExternalManifest, write_manifest
from steiger.builds.models import BuildResult, RunReport, ServiceReport
from steiger.cli import app, parse_variables
from steiger.deploy import DeployError
from steiger.platforms import PlatformResolutionError
from steiger.registry.client import RegistryClient
from steiger.types import BackendKind, ImageRef, Platform

runner = CliRunner()

DIGEST = "sha256:" + "3" * 64

CONFIG = """
services:
  api:
    build:
      type: ko
      importPath: ./cmd/api
  web:
    build:
      type: docker
deploy:
  app:
    type: helm
    path: ./chart
"""


def _report(failed: bool = False) -> RunReport:
    entries = {
        "api": ServiceReport(
            BuildResult.success(
                "api", BackendKind.KO, [ImageRef("api", "gcr.io/x/api", DIGEST, "latest")]
            )
        )
    }
    if failed:
        error = BuildError("web", BackendKind.DOCKER, "Dockerfile not found")
        entries["web"] = ServiceReport(BuildResult.failure(error))
    else:
        entries["web"] = ServiceReport(
            BuildResult.success(
                "web", BackendKind.DOCKER, [ImageRef("web", "gcr.io/x/web", DIGEST, "latest")]
            )
        )
    return RunReport(entries)


@pytest.fixture
def project(tmp_path, monkeypatch):
    """Project directory with a steiger.yml; cluster detection disabled."""
    (tmp_path / "steiger.yml").write_text(CONFIG)
    monkeypatch.setenv("STEIGER_DETECT_CLUSTER_PLATFORM", "false")
    return tmp_path


@pytest.fixture
def fake_run():
    with patch("steiger.cli.build_service.run") as run:
        run.return_value = _report()
        yield run


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "build, push and deploy" in result.stdout

    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        result = runner.invoke(app, [])
        assert "Usage:" in result.output

    @pytest.mark.parametrize("command", ["build", "deploy", "run", "config"])
    def test_subcommand_help(self, command) -> None:
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_sections(self, project) -> None:
        result = runner.invoke(app, ["--dir", str(project), "config"])
        assert result.exit_code == 0
        for section in ("Project:", "Operational:", "Registry:", "Timeouts (seconds):"):
            assert section in result.stdout
        assert "Builder instance" in result.stdout

    def test_config_json(self) -> None:
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        for key in (
            "config_file",
            "builder_name",
            "log_level",
            "max_concurrent_builds",
            "insecure_registries",
            "build_timeout",
            "registry_timeout",
        ):
            assert key in data, f"Missing key: {key}"

    def test_env_override(self, monkeypatch) -> None:
        monkeypatch.setenv("STEIGER_BUILDER_NAME", "ci-builder")
        result = runner.invoke(app, ["config", "--json"])
        assert json.loads(result.stdout)["builder_name"] == "ci-builder"


class TestParseVariables:
    """Tests for parse_variables function."""

    def test_pairs(self) -> None:
        assert parse_variables(["a=1", "b=x=y", "c="]) == {"a": "1", "b": "x=y", "c": ""}

    def test_missing_separator(self) -> None:
        with pytest.raises(typer.BadParameter):
            parse_variables(["novalue"])


class TestBuildCommand:
    """Tests for the build command."""

    def test_success_writes_manifest(self, project, fake_run) -> None:
        output = project / "out" / "build.json"
        result = runner.invoke(
            app, ["--dir", str(project), "build", "--output-file", str(output)]
        )

        assert result.exit_code == 0, result.output
        data = json.loads(output.read_text())
        assert data == {
            "builds": [
                {"imageName": "api", "tag": "gcr.io/x/api:latest"},
                {"imageName": "web", "tag": "gcr.io/x/web:latest"},
            ]
        }

    def test_options_forwarded(self, project, fake_run) -> None:
        result = runner.invoke(
            app,
            [
                "--dir",
                str(project),
                "build",
                "--platform",
                "linux/arm64",
                "--tag",
                "v2",
                "-j",
                "2",
                "--var",
                "env=prod",
            ],
        )

        assert result.exit_code == 0, result.output
        services, options = fake_run.call_args[0]
        assert sorted(s.name for s in services) == ["api", "web"]
        assert options.platform == "linux/arm64"
        assert options.tag == "v2"
        assert options.max_concurrency == 2
        assert options.variables == {"env": "prod"}
        assert options.working_dir == project.resolve()
        assert fake_run.call_args[1]["registry"] is None

    def test_repo_creates_registry_client(self, project, fake_run) -> None:
        result = runner.invoke(app, ["--dir", str(project), "build", "--repo", "gcr.io/x"])
        assert result.exit_code == 0, result.output
        assert isinstance(fake_run.call_args[1]["registry"], RegistryClient)
        assert fake_run.call_args[0][1].repo == "gcr.io/x"

    def test_failure_exits_nonzero(self, project, fake_run) -> None:
        fake_run.return_value = _report(failed=True)
        result = runner.invoke(app, ["--dir", str(project), "build"])
        assert result.exit_code == 1
        assert "1 service(s) failed: web" in result.output

    def test_missing_config(self, tmp_path, fake_run) -> None:
        result = runner.invoke(app, ["--dir", str(tmp_path), "build"])
        assert result.exit_code == 1
        assert "Configuration error" in result.output
        fake_run.assert_not_called()

    def test_platform_error(self, project, fake_run) -> None:
        fake_run.side_effect = PlatformResolutionError("plan9/amd64")
        result = runner.invoke(app, ["--dir", str(project), "build", "-p", "plan9/amd64"])
        assert result.exit_code == 1

    def test_invalid_variable(self, project, fake_run) -> None:
        result = runner.invoke(app, ["--dir", str(project), "build", "--var", "oops"])
        assert result.exit_code == 2
        fake_run.assert_not_called()

    def test_cluster_platform_detection(self, project, fake_run, monkeypatch) -> None:
        """Without --platform the cluster hint should be passed to the run."""
        monkeypatch.setenv("STEIGER_DETECT_CLUSTER_PLATFORM", "true")
        with patch(
            "steiger.cli.detect_cluster_platform", return_value=Platform("linux", "arm64")
        ):
            result = runner.invoke(app, ["--dir", str(project), "build"])
        assert result.exit_code == 0, result.output
        assert fake_run.call_args[1]["cluster_hint"] == Platform("linux", "arm64")


class TestDeployCommand:
    """Tests for the deploy command."""

    def test_deploy_manifest(self, project) -> None:
        manifest = ExternalManifest(
            builds=[BuildEntry(image_name="api", tag="gcr.io/x/api:latest")]
        )
        path = write_manifest(manifest, project / "build.json")

        with patch("steiger.cli.deploy_releases") as deploy:
            result = runner.invoke(app, ["--dir", str(project), "deploy", "-i", str(path)])

        assert result.exit_code == 0, result.output
        releases, received = deploy.call_args[0]
        assert list(releases) == ["app"]
        assert received == manifest

    def test_missing_manifest(self, project) -> None:
        with patch("steiger.cli.deploy_releases") as deploy:
            result = runner.invoke(
                app, ["--dir", str(project), "deploy", "-i", str(project / "nope.json")]
            )
        assert result.exit_code == 1
        deploy.assert_not_called()

    def test_deploy_failure(self, project) -> None:
        path = write_manifest(ExternalManifest(), project / "build.json")
        with patch(
            "steiger.cli.deploy_releases",
            side_effect=DeployError("app: helm failed", code="deploy_failed"),
        ):
            result = runner.invoke(app, ["--dir", str(project), "deploy", "-i", str(path)])
        assert result.exit_code == 1
        assert "Deployment failed" in result.output


class TestRunCommand:
    """Tests for the run command."""

    def test_builds_then_deploys(self, project, fake_run) -> None:
        with patch("steiger.cli.deploy_releases") as deploy:
            result = runner.invoke(app, ["--dir", str(project), "run", "--repo", "gcr.io/x"])

        assert result.exit_code == 0, result.output
        manifest = deploy.call_args[0][1]
        assert manifest.tags() == {
            "api": "gcr.io/x/api:latest",
            "web": "gcr.io/x/web:latest",
        }

    def test_failed_build_skips_deploy(self, project, fake_run) -> None:
        fake_run.return_value = _report(failed=True)
        with patch("steiger.cli.deploy_releases") as deploy:
            result = runner.invoke(app, ["--dir", str(project), "run"])

        assert result.exit_code == 1
        assert "Skipping deployment" in result.output
        deploy.assert_not_called()
