"""
Update Coordinator - serialized, fire-and-forget self-update.

At most one update script runs at a time. The guard is taken when a trigger is
accepted and released by the background task when it finishes, whatever the
outcome.
"""
import asyncio
import logging
import threading
from contextlib import suppress
from pathlib import Path
from typing import Optional

from build_service.core.errors import UpdateInProgressError
from build_service.core.metrics import metrics
from build_service.core.process import run_process

logger = logging.getLogger(__name__)


class UpdateGuard:
    """Exclusive update-in-progress flag."""

    def __init__(self):
        self._lock = threading.Lock()
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        with self._lock:
            return self._in_progress

    def try_acquire(self) -> bool:
        """Set the flag if clear. Returns False if an update already holds it."""
        with self._lock:
            if self._in_progress:
                return False
            self._in_progress = True
            return True

    def release(self) -> None:
        with self._lock:
            self._in_progress = False


class UpdateCoordinator:
    """Runs the update script in the background, one at a time."""

    def __init__(self, script_path: str, timeout: Optional[float] = None, guard: Optional[UpdateGuard] = None):
        self.script_path = script_path
        self.timeout = timeout
        self.guard = guard or UpdateGuard()
        self._task: Optional[asyncio.Task] = None

    @property
    def in_progress(self) -> bool:
        return self.guard.in_progress

    def trigger(self) -> asyncio.Task:
        """
        Start an update unless one is running.

        Raises:
            UpdateInProgressError: An update holds the guard; nothing is started
        """
        if not self.guard.try_acquire():
            metrics.inc("updates_rejected_total")
            logger.warning("update_rejected reason=in_progress")
            raise UpdateInProgressError()

        try:
            task = asyncio.create_task(self._run())
        except BaseException:
            self.guard.release()
            raise
        # Runs once the task ends for any reason, even if cancelled before it started
        task.add_done_callback(self._on_done)
        self._task = task
        metrics.inc("updates_started_total")
        logger.info("update_started")
        return self._task

    async def _run(self) -> None:
        try:
            result = await run_process(
                [self.script_path],
                cwd=Path(self.script_path).parent,
                timeout=self.timeout,
                log_output=True,
            )
            if result.succeeded:
                logger.info(f"update_completed duration_ms={result.duration_ms}")
            else:
                metrics.inc("updates_failed_total")
                logger.error(
                    f"update_failed exit_code={result.exit_code} timed_out={result.timed_out} "
                    f"output={result.output_text}"
                )
        except Exception:
            metrics.inc("updates_failed_total")
            logger.exception("update_error")

    def _on_done(self, task: asyncio.Task) -> None:
        self.guard.release()
        if task.cancelled():
            logger.warning("update_aborted")

    async def wait(self) -> None:
        """Wait for the current update task, if any."""
        task = self._task
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

    async def shutdown(self) -> None:
        """Cancel an in-flight update; the runner kills the script."""
        task = self._task
        if task is not None and not task.done():
            logger.info("update_cancelled reason=shutdown")
            task.cancel()
        await self.wait()
