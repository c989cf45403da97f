"""
Tests for the build job orchestrator.

Tests cover:
- Request validation order and error mapping
- Happy path state transitions and cleanup
- Step failures skip later steps and still release the workspace
- One deadline shared by all steps
- Log-streaming body: log lines, then artifact or ERROR line
- Post-build self-update trigger
"""
import asyncio
import time
from unittest.mock import MagicMock

import pytest

from build_service.core.config import Settings
from build_service.core.errors import (
    BuildError,
    BuildTimeoutError,
    FetchError,
    InstallError,
    InvalidRepoURLError,
    InvalidRequestError,
    MissingParametersError,
    UnsupportedPlatformError,
    UpdateInProgressError,
)
from build_service.core.log_streamer import ResponseSink
from build_service.core.metrics import metrics
from build_service.core.orchestrator import BuildJob, JobState, generate_job_id, parse_build_request
from build_service.core.platform_builder import Platform
from build_service.core.workspace import WorkspaceManager
from build_service.schemas.build import BuildRequest


def _body(**overrides) -> bytes:
    payload = {
        "repo_url": "https://github.com/owner/app.git",
        "platform": "android",
        "package_path": "apps/mobile",
    }
    payload.update(overrides)
    return BuildRequest(**payload).model_dump_json().encode()


@pytest.fixture
def workspaces(settings) -> WorkspaceManager:
    return WorkspaceManager(root=settings.temp_dir_root, prefix=settings.temp_dir_prefix)


def _job(settings, workspaces, updater=None, **overrides) -> BuildJob:
    request, platform = parse_build_request(_body(**overrides), settings.platforms)
    return BuildJob(request, platform, settings, workspaces, updater=updater, job_id="20240101-1200-abcd1234")


def _leftovers(workspaces: WorkspaceManager) -> list:
    if not workspaces.root.exists():
        return []
    return list(workspaces.root.iterdir())


# =============================================================================
# Request validation
# =============================================================================

class TestParseBuildRequest:
    """Tests for parse_build_request."""

    def test_valid_request(self):
        request, platform = parse_build_request(_body(platform="ios", update_server=True), ["android", "ios"])
        assert platform is Platform.IOS
        assert request.update_server is True
        assert request.stream_logs is False

    def test_unknown_fields_ignored(self):
        body = b'{"repo_url": "https://github.com/o/r.git", "platform": "android", "package_path": ".", "extra": 1}'
        request, _ = parse_build_request(body, ["android"])
        assert request.package_path == "."

    @pytest.mark.parametrize("body", [b"", b"not json", b"[]", b'{"platform": 5}'])
    def test_malformed_body(self, body):
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_build_request(body, ["android"])
        assert exc_info.value.message == "Invalid request payload"

    @pytest.mark.parametrize("field", ["repo_url", "platform", "package_path"])
    def test_missing_fields(self, field):
        with pytest.raises(MissingParametersError) as exc_info:
            parse_build_request(_body(**{field: ""}), ["android"])
        assert exc_info.value.status_code == 400

    def test_unsupported_platform(self):
        with pytest.raises(UnsupportedPlatformError):
            parse_build_request(_body(platform="windows"), ["android", "ios"])

    @pytest.mark.parametrize("platform", ["Android", " ios ", "IOS"])
    def test_platform_must_match_exactly(self, platform):
        with pytest.raises(UnsupportedPlatformError):
            parse_build_request(_body(platform=platform), ["android", "ios"])

    def test_platform_outside_allow_list(self):
        with pytest.raises(UnsupportedPlatformError):
            parse_build_request(_body(platform="ios"), ["android"])

    def test_repo_url_with_separator(self):
        with pytest.raises(InvalidRepoURLError):
            parse_build_request(_body(repo_url="https://github.com/o/r.git;reboot"), ["android"])

    def test_package_path_traversal(self):
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_build_request(_body(package_path="../../etc"), ["android"])
        assert exc_info.value.message == "Invalid package_path parameter"


def test_job_ids_are_unique():
    ids = {generate_job_id() for _ in range(200)}
    assert len(ids) == 200
    assert all(len(i.split("-")) == 3 for i in ids)


# =============================================================================
# Job lifecycle
# =============================================================================

class TestBuildJob:
    """Tests for BuildJob with the external steps faked."""

    @pytest.mark.asyncio
    async def test_happy_path(self, settings, workspaces, fake_pipeline):
        succeeded_before = metrics.get("builds_succeeded_total")
        job = _job(settings, workspaces)
        assert job.state is JobState.VALIDATING

        artifact = await job.run()
        assert fake_pipeline.calls == ["fetch", "install", "build"]
        assert artifact.name == "app-20240101-1200-abcd1234.apk"
        assert job.state is JobState.BUILDING

        headers = job.response_headers()
        assert headers["Content-Disposition"] == "attachment; filename=app-20240101-1200-abcd1234.apk"
        assert headers["Content-Type"] == "application/vnd.android.package-archive"
        assert headers["Content-Length"] == str(len(fake_pipeline.artifact))

        body = b"".join([chunk async for chunk in job.iter_artifact()])
        assert body == fake_pipeline.artifact
        assert job.state is JobState.DONE
        assert metrics.get("builds_succeeded_total") == succeeded_before + 1

        await job.close()
        assert _leftovers(workspaces) == []

    @pytest.mark.asyncio
    async def test_fetch_failure_skips_install(self, settings, workspaces, fake_pipeline):
        fake_pipeline.fail_at = "fetch"
        failed_before = metrics.get("builds_failed_total")
        job = _job(settings, workspaces)

        with pytest.raises(FetchError):
            await job.run()

        assert fake_pipeline.calls == ["fetch"]
        assert job.state is JobState.FAILED
        assert metrics.get("builds_failed_total") == failed_before + 1
        await job.close()
        assert _leftovers(workspaces) == []

    @pytest.mark.asyncio
    async def test_install_failure_skips_build(self, settings, workspaces, fake_pipeline):
        fake_pipeline.fail_at = "install"
        job = _job(settings, workspaces)

        with pytest.raises(InstallError):
            await job.run()

        assert fake_pipeline.calls == ["fetch", "install"]
        await job.close()
        assert _leftovers(workspaces) == []

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, settings, workspaces, fake_pipeline):
        job = _job(settings, workspaces)
        await job.run()
        await job.close()
        await job.close()
        assert job.state is JobState.FAILED
        assert _leftovers(workspaces) == []

    @pytest.mark.asyncio
    async def test_deadline_spans_all_steps(self, tmp_path, monkeypatch):
        settings = Settings(
            log_directory=str(tmp_path / "logs"),
            temp_dir_root=str(tmp_path / "workspaces"),
            build_timeout="0.3s",
            install_command="sleep 30",
        )
        workspaces = WorkspaceManager(root=settings.temp_dir_root)

        async def fetch(repo_url, dest, branch="main", timeout=None):
            (dest / "apps" / "mobile").mkdir(parents=True)
            return dest

        monkeypatch.setattr("build_service.core.orchestrator.fetch_repository", fetch)
        timed_out_before = metrics.get("builds_timed_out_total")
        job = _job(settings, workspaces)

        start = time.monotonic()
        with pytest.raises(BuildTimeoutError):
            await job.run()

        assert time.monotonic() - start < 10
        assert job.state is JobState.FAILED
        assert metrics.get("builds_timed_out_total") == timed_out_before + 1
        await job.close()
        assert _leftovers(workspaces) == []

    @pytest.mark.asyncio
    async def test_update_triggered_after_serving(self, settings, workspaces, fake_pipeline):
        updater = MagicMock()
        job = _job(settings, workspaces, updater=updater, update_server=True)
        await job.run()
        async for _ in job.iter_artifact():
            pass
        await job.close()
        updater.trigger.assert_called_once()

    @pytest.mark.asyncio
    async def test_no_update_after_failure(self, settings, workspaces, fake_pipeline):
        fake_pipeline.fail_at = "build"
        updater = MagicMock()
        job = _job(settings, workspaces, updater=updater, update_server=True)
        with pytest.raises(BuildError):
            await job.run()
        await job.close()
        updater.trigger.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_conflict_does_not_fail_job(self, settings, workspaces, fake_pipeline):
        updater = MagicMock()
        updater.trigger.side_effect = UpdateInProgressError()
        job = _job(settings, workspaces, updater=updater, update_server=True)
        await job.run()
        async for _ in job.iter_artifact():
            pass
        await job.close()
        assert job.state is JobState.DONE


# =============================================================================
# Log-streaming mode
# =============================================================================

class TestStreamBuild:
    """Tests for BuildJob.stream_build."""

    @pytest.mark.asyncio
    async def test_log_lines_then_artifact(self, settings, workspaces, fake_pipeline):
        settings.log_path.parent.mkdir(parents=True, exist_ok=True)
        settings.log_path.write_text("before the build\n")
        fake_pipeline.log_path = settings.log_path
        fake_pipeline.build_log_lines = ["> Task :app:assembleRelease", "BUILD SUCCESSFUL"]

        job = _job(settings, workspaces, stream_logs=True)
        await job.prepare()
        body = b"".join([chunk async for chunk in job.stream_build()])

        assert body.endswith(fake_pipeline.artifact)
        logs = body[: -len(fake_pipeline.artifact)]
        assert b"> Task :app:assembleRelease\n" in logs
        assert b"BUILD SUCCESSFUL\n" in logs
        assert b"before the build" not in logs
        assert job.state is JobState.DONE
        assert _leftovers(workspaces) == []

    @pytest.mark.asyncio
    async def test_failure_ends_with_error_line(self, settings, workspaces, fake_pipeline):
        settings.log_path.parent.mkdir(parents=True, exist_ok=True)
        settings.log_path.write_text("")
        fake_pipeline.log_path = settings.log_path
        fake_pipeline.build_log_lines = ["FAILURE: Build failed with an exception."]
        fake_pipeline.fail_at = "build"

        job = _job(settings, workspaces, stream_logs=True)
        await job.prepare()
        body = b"".join([chunk async for chunk in job.stream_build()])

        assert b"FAILURE: Build failed with an exception.\n" in body
        assert body.endswith(b"ERROR: Failed to build the app\n")
        assert fake_pipeline.artifact not in body
        assert job.state is JobState.FAILED
        assert _leftovers(workspaces) == []

    @pytest.mark.asyncio
    async def test_reader_gone_mid_stream(self, settings, workspaces, fake_pipeline):
        settings.log_path.parent.mkdir(parents=True, exist_ok=True)
        settings.log_path.write_text("")
        fake_pipeline.log_path = settings.log_path
        fake_pipeline.build_log_lines = [f"> Task :app:step{i}" for i in range(100)]

        job = _job(settings, workspaces, stream_logs=True)
        await job.prepare()
        body = job.stream_build(ResponseSink(maxsize=2))
        first = await asyncio.wait_for(body.__anext__(), timeout=5)
        assert first == b"> Task :app:step0\n"

        await asyncio.wait_for(body.aclose(), timeout=5)

        assert job.state is JobState.FAILED
        assert not job.streamer.running
        assert _leftovers(workspaces) == []
