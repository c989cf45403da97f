"""
Build Job Orchestrator - one build request from validation to cleanup.

State machine:
    VALIDATING -> FETCHING -> INSTALLING -> BUILDING -> SERVING -> DONE
FAILED is reachable from every state after VALIDATING. Each external step gets
what is left of a single job deadline. close() stops the log tail and removes
the workspace exactly once, whichever state the job reached.
"""
import asyncio
import logging
import secrets
import time
from contextlib import suppress
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional

from pydantic import ValidationError

from build_service.core.config import Settings
from build_service.core.errors import (
    BuildServiceError,
    BuildTimeoutError,
    InvalidRequestError,
    MissingParametersError,
    UpdateInProgressError,
)
from build_service.core.fetcher import fetch_repository, validate_repo_url
from build_service.core.installer import install_dependencies
from build_service.core.log_streamer import LogStreamer, ResponseSink
from build_service.core.metrics import metrics
from build_service.core.platform_builder import Platform, artifact_filename, build_app, validate_platform
from build_service.core.request_context import set_job_id
from build_service.core.updater import UpdateCoordinator
from build_service.core.workspace import Workspace, WorkspaceManager, is_safe_relative_path
from build_service.schemas.build import BuildRequest

logger = logging.getLogger(__name__)

ARTIFACT_CHUNK_SIZE = 64 * 1024


class JobState(str, Enum):
    """Build job lifecycle state."""
    VALIDATING = "validating"
    FETCHING = "fetching"
    INSTALLING = "installing"
    BUILDING = "building"
    SERVING = "serving"
    DONE = "done"
    FAILED = "failed"


def generate_job_id() -> str:
    """Minute timestamp for humans plus a random suffix for uniqueness."""
    return f"{datetime.now().strftime('%Y%m%d-%H%M')}-{secrets.token_hex(4)}"


def parse_build_request(body: bytes, allowed_platforms: Optional[Iterable[str]] = None) -> tuple[BuildRequest, Platform]:
    """
    Validate a raw request body. Nothing is spawned or created here.

    Raises:
        InvalidRequestError: Malformed body, bad URL or unsafe package path
        MissingParametersError: repo_url, platform or package_path empty
        UnsupportedPlatformError: Platform unknown or not allowed
    """
    try:
        request = BuildRequest.model_validate_json(body or b"")
    except ValidationError as e:
        logger.warning(f"invalid_request_payload errors={e.error_count()}")
        raise InvalidRequestError()

    missing = request.missing_fields()
    if missing:
        logger.warning(f"missing_parameters fields={','.join(missing)}")
        raise MissingParametersError()

    platform = validate_platform(request.platform, allowed_platforms)
    validate_repo_url(request.repo_url)
    if not is_safe_relative_path(request.package_path):
        raise InvalidRequestError("Invalid package_path parameter")
    return request, platform


class BuildJob:
    """A single validated build request and the resources it owns."""

    def __init__(
        self,
        request: BuildRequest,
        platform: Platform,
        settings: Settings,
        workspaces: WorkspaceManager,
        updater: Optional[UpdateCoordinator] = None,
        job_id: Optional[str] = None,
    ):
        self.request = request
        self.platform = platform
        self.settings = settings
        self.workspaces = workspaces
        self.updater = updater
        self.id = job_id or generate_job_id()
        self.filename = artifact_filename(platform, self.id)
        self.state = JobState.VALIDATING
        self.error: Optional[BuildServiceError] = None
        self.workspace: Optional[Workspace] = None
        self.package_dir: Optional[Path] = None
        self.artifact: Optional[Path] = None
        self.streamer: Optional[LogStreamer] = None
        self._deadline = time.monotonic() + settings.build_timeout_s
        self._closed = False
        metrics.inc("builds_started_total")

    # -------------------------------------------------------------------------
    # State helpers
    # -------------------------------------------------------------------------

    def _enter(self, state: JobState) -> None:
        self.state = state
        logger.info(f"job_state job_id={self.id} state={state.value}")

    def _fail(self, error: BuildServiceError) -> None:
        failed_in = self.state
        self.error = error
        self.state = JobState.FAILED
        metrics.inc("builds_failed_total")
        if isinstance(error, BuildTimeoutError):
            metrics.inc("builds_timed_out_total")
        logger.error(f"job_failed job_id={self.id} state={failed_in.value} reason={error.message!r}")

    def remaining(self) -> float:
        """Seconds left before the job deadline."""
        left = self._deadline - time.monotonic()
        if left <= 0:
            raise BuildTimeoutError()
        return left

    async def _guarded(self, step):
        try:
            return await step
        except BuildServiceError as e:
            self._fail(e)
            raise
        except asyncio.CancelledError:
            logger.warning(f"job_cancelled job_id={self.id} state={self.state.value}")
            self.state = JobState.FAILED
            raise

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def prepare(self) -> None:
        """Fetch the repository and install dependencies."""
        set_job_id(self.id)
        await self._guarded(self._prepare())

    async def _prepare(self) -> None:
        self._enter(JobState.FETCHING)
        self.workspace = self.workspaces.acquire(self.id)
        await fetch_repository(
            self.request.repo_url,
            self.workspace.clone_path,
            branch=self.settings.default_clone_branch,
            timeout=self.remaining(),
        )

        self._enter(JobState.INSTALLING)
        self.package_dir = self.workspace.package_path(self.request.package_path)
        await install_dependencies(
            self.package_dir,
            command=self.settings.install_argv,
            timeout=self.remaining(),
        )

    async def build(self) -> Path:
        """Run the platform build. Requires prepare()."""
        set_job_id(self.id)
        return await self._guarded(self._build())

    async def _build(self) -> Path:
        self._enter(JobState.BUILDING)
        self.artifact = await build_app(
            self.package_dir,
            self.platform,
            self.filename,
            command=self.settings.build_argv,
            timeout=self.remaining(),
            allowed=self.settings.platforms,
        )
        return self.artifact

    async def run(self) -> Path:
        """prepare() then build()."""
        await self.prepare()
        return await self.build()

    # -------------------------------------------------------------------------
    # Serving
    # -------------------------------------------------------------------------

    def response_headers(self, include_length: bool = True) -> dict[str, str]:
        headers = {
            "Content-Disposition": f"attachment; filename={self.filename}",
            "Content-Type": self.platform.content_type,
        }
        if include_length and self.artifact is not None:
            headers["Content-Length"] = str(self.artifact.stat().st_size)
        return headers

    async def iter_artifact(self) -> AsyncIterator[bytes]:
        """Yield the artifact bytes. Errors are logged; the status is already sent."""
        self._enter(JobState.SERVING)
        sent = 0
        try:
            with open(self.artifact, "rb") as f:
                while True:
                    chunk = await asyncio.to_thread(f.read, ARTIFACT_CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk
                    sent += len(chunk)
        except OSError as e:
            logger.error(f"artifact_send_failed job_id={self.id} error={type(e).__name__}")
            self.state = JobState.FAILED
            return
        self._enter(JobState.DONE)
        metrics.inc("builds_succeeded_total")
        logger.info(f"artifact_sent job_id={self.id} bytes={sent}")

    async def stream_build(self, sink: Optional[ResponseSink] = None) -> AsyncIterator[bytes]:
        """
        Response body for log-streaming mode. Requires prepare().

        Yields service log lines while the build runs, then the artifact bytes,
        or a final ERROR line if the build fails.
        """
        set_job_id(self.id)
        sink = sink or ResponseSink()
        self.streamer = LogStreamer(self.settings.log_path, sink, self.settings.log_poll_interval)
        self.streamer.start()

        async def build_then_close_sink():
            try:
                await self.build()
            finally:
                # Streamer must be stopped before anything else writes
                await self.streamer.stop()
                await sink.close()
                logger.info(f"log_stream_stopped job_id={self.id} lines={self.streamer.lines_sent}")

        task = asyncio.create_task(build_then_close_sink())
        try:
            async for line in sink:
                yield line
            try:
                await task
            except BuildServiceError as e:
                yield f"ERROR: {e.message}\n".encode("utf-8")
                return
            async for chunk in self.iter_artifact():
                yield chunk
        finally:
            # Reader is done or gone: unblock the tail if it is waiting for room
            sink.abort()
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError, BuildServiceError):
                    await task
            await self.close()

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Stop the log tail and release the workspace. Runs once."""
        if self._closed:
            return
        self._closed = True

        # Synchronous part first: this may run inside an already cancelled scope
        if self.streamer is not None:
            self.streamer.request_stop()
        if self.workspace is not None:
            self.workspaces.release(self.workspace)
        if self.state not in (JobState.DONE, JobState.FAILED):
            self.state = JobState.FAILED
        logger.info(f"job_closed job_id={self.id} state={self.state.value}")

        # Triggered after serving since the update script restarts the service
        if self.state is JobState.DONE and self.request.update_server and self.updater is not None:
            try:
                self.updater.trigger()
            except UpdateInProgressError:
                logger.warning(f"post_build_update_skipped job_id={self.id} reason=in_progress")

        if self.streamer is not None:
            await self.streamer.stop()
