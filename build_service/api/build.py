"""
Build API route.

Endpoints:
- POST /build - Clone, install and build an app, respond with the artifact
"""
import asyncio
import logging
from contextlib import suppress

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from build_service.core.config import get_settings
from build_service.core.errors import ClientDisconnectedError
from build_service.core.orchestrator import BuildJob, parse_build_request

logger = logging.getLogger(__name__)

router = APIRouter(tags=["build"])

async def _wait_for_disconnect(receive) -> None:
    """Return once the server reports the client gone. The body is already read."""
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


async def run_until_disconnected(request: Request, coro):
    """
    Await coro, cancelling it if the client disconnects first.

    Cancellation reaches the process runner, which kills the running step.
    """
    task = asyncio.create_task(coro)
    watcher = asyncio.create_task(_wait_for_disconnect(request.receive))
    try:
        await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
        if task.done():
            return task.result()
        if watcher.exception() is not None:
            # No disconnect signal from here on; the job deadline still applies
            logger.warning(f"disconnect_watch_failed error={type(watcher.exception()).__name__}")
            return await task
        logger.warning("client_disconnected")
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        raise ClientDisconnectedError()
    finally:
        for pending in (watcher, task):
            if not pending.done():
                pending.cancel()
                with suppress(asyncio.CancelledError):
                    await pending


@router.post("/build")
async def build(request: Request):
    """
    Build an app from a git repository.

    Body: {repo_url, platform, package_path, update_server?, stream_logs?}

    Without stream_logs the response is the artifact with an exact
    Content-Length. With stream_logs, service log lines are streamed while the
    build runs and the artifact bytes follow; a build failure then ends the
    body with an ERROR line because the status is already sent.
    """
    settings = get_settings()
    body = await request.body()
    build_request, platform = parse_build_request(body, settings.platforms)

    job = BuildJob(
        build_request,
        platform,
        settings,
        workspaces=request.app.state.workspaces,
        updater=request.app.state.updater,
    )
    logger.info(f"build_accepted job_id={job.id} platform={platform.value} stream_logs={build_request.stream_logs}")

    try:
        if build_request.stream_logs:
            await run_until_disconnected(request, job.prepare())
            return StreamingResponse(
                job.stream_build(),
                headers=job.response_headers(include_length=False),
                media_type=platform.content_type,
                background=BackgroundTask(job.close),
            )

        await run_until_disconnected(request, job.run())
        return StreamingResponse(
            job.iter_artifact(),
            headers=job.response_headers(),
            media_type=platform.content_type,
            background=BackgroundTask(job.close),
        )
    except BaseException:
        await job.close()
        raise
