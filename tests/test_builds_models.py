"""Tests for run report models."""

import pytest

from steiger.builders.base import BuildError
from steiger.builds.models import BuildResult, RunReport, RunReportBuilder, ServiceReport
from steiger.registry.client import PushError
from steiger.types import BackendKind, ImageRef, PushOutcome, PushStatus

DIGEST = "sha256:" + "1" * 64


def _ok(name: str = "app") -> ServiceReport:
    image = ImageRef(name=name, repository=name, digest=DIGEST, tag="latest")
    return ServiceReport(BuildResult.success(name, BackendKind.DOCKER, [image]))


def _failed(name: str = "app") -> ServiceReport:
    return ServiceReport(
        BuildResult.failure(BuildError(name, BackendKind.KO, "boom", code="command_failed"))
    )


class TestServiceReport:
    """Tests for ServiceReport."""

    def test_success(self):
        report = _ok()
        assert report.succeeded
        assert report.cause is None
        assert report.images[0].reference == "app:latest"

    def test_build_failure(self):
        report = _failed()
        assert not report.succeeded
        assert report.cause == "boom"
        assert report.build.backend is BackendKind.KO
        assert report.images == ()

    def test_push_failure(self):
        """A push failure should fail the service with the push as cause."""
        report = ServiceReport(_ok().build, push_error=PushError("denied", code="auth_rejected"))
        assert not report.succeeded
        assert report.cause == "push failed: denied"

    def test_pushed_images_replace_local(self):
        remote = ImageRef(name="app", repository="gcr.io/x/app", digest=DIGEST, tag="latest")
        report = ServiceReport(
            _ok().build, pushes=(PushOutcome(image=remote, status=PushStatus.SKIPPED),)
        )
        assert report.images == (remote,)


class TestRunReportBuilder:
    """Tests for RunReportBuilder."""

    def test_freeze_complete(self):
        builder = RunReportBuilder(["b", "a"])
        builder.record("b", _failed("b"))
        builder.record("a", _ok("a"))

        report = builder.freeze()

        assert list(report) == ["a", "b"]
        assert report.succeeded == ["a"]
        assert report.failed == ["b"]
        assert not report.ok

    def test_record_once(self):
        """A service slot should be written exactly once."""
        builder = RunReportBuilder(["app"])
        builder.record("app", _ok())
        with pytest.raises(ValueError):
            builder.record("app", _failed())
        assert builder.recorded("app")

    def test_unknown_service(self):
        builder = RunReportBuilder(["app"])
        with pytest.raises(KeyError):
            builder.record("other", _ok("other"))

    def test_freeze_incomplete(self):
        """Freezing with a missing service should fail."""
        builder = RunReportBuilder(["a", "b"])
        builder.record("a", _ok("a"))
        with pytest.raises(ValueError, match="b"):
            builder.freeze()


class TestRunReport:
    """Tests for RunReport."""

    def test_read_only(self):
        report = RunReport({"app": _ok()})
        with pytest.raises(TypeError):
            report._entries["other"] = _ok("other")

    def test_aborted_not_ok(self):
        report = RunReport({"app": _ok()}, aborted=True)
        assert report.succeeded == ["app"]
        assert not report.ok

    def test_empty_ok(self):
        assert RunReport({}).ok
