"""
Process Runner - run one external command under a deadline.

Security:
- No shell anywhere, commands are argument lists
- Child runs in its own process group so the whole tree can be killed
- On timeout or cancellation the group is killed and reaped, never abandoned
"""
import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from build_service.core.errors import ProcessError

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("buildsvc.process.output")

READ_CHUNK_SIZE = 4096
MAX_OUTPUT_BYTES = 1 * 1024 * 1024  # 1MB kept per command (tail)
KILL_GRACE_SECONDS = 5


@dataclass
class ProcessResult:
    """Result of an external command."""
    command: list[str]
    exit_code: int
    output: bytes
    duration_ms: int
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output_text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    # The child is a session leader, so its pid is the process group id
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        if proc.returncode is None:
            proc.kill()


async def _reap(proc: asyncio.subprocess.Process) -> None:
    try:
        await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.error(f"process_reap_timeout pid={proc.pid}")


class _OutputCollector:
    """Accumulates combined output and optionally logs it line by line."""

    def __init__(self, name: str, log_output: bool):
        self.name = name
        self.log_output = log_output
        self.buffer = bytearray()
        self._partial = b""

    def feed(self, chunk: bytes) -> None:
        self.buffer.extend(chunk)
        if len(self.buffer) > MAX_OUTPUT_BYTES:
            del self.buffer[: len(self.buffer) - MAX_OUTPUT_BYTES]
        if not self.log_output:
            return
        data = self._partial + chunk
        *lines, self._partial = data.split(b"\n")
        for line in lines:
            self._emit(line)

    def flush(self) -> None:
        if self.log_output and self._partial:
            self._emit(self._partial)
        self._partial = b""

    def _emit(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").rstrip("\r")
        if text:
            output_logger.info(f"[{self.name}] {text}")


async def _pump(stream: asyncio.StreamReader, collector: _OutputCollector) -> None:
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        collector.feed(chunk)
    collector.flush()


async def run_process(
    cmd: list[str],
    cwd: Optional[Path] = None,
    env_override: Optional[dict] = None,
    timeout: Optional[float] = None,
    log_output: bool = False,
) -> ProcessResult:
    """
    Execute a command with no shell and wait for it.

    Args:
        cmd: Command as list of strings
        cwd: Working directory
        env_override: Variables added to the inherited environment
        timeout: Seconds before the process group is killed (None = no limit)
        log_output: Also log each output line as it arrives

    Returns:
        ProcessResult with combined stdout+stderr

    Raises:
        ProcessError: If the command is not a non-empty list
        asyncio.CancelledError: After killing the process, if the caller is cancelled
    """
    if not isinstance(cmd, list):
        raise ProcessError("Command must be a list, not a string")
    if len(cmd) == 0:
        raise ProcessError("Command cannot be empty")

    env = os.environ.copy()
    if env_override:
        env.update(env_override)

    name = Path(cmd[0]).name
    start = time.monotonic()

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as e:
        logger.warning(f"process_spawn_failed cmd={name} error={type(e).__name__}")
        return ProcessResult(
            command=cmd,
            exit_code=127,
            output=str(e).encode("utf-8"),
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    logger.info(f"process_started cmd={name} pid={proc.pid}")
    collector = _OutputCollector(name, log_output)
    pump = asyncio.create_task(_pump(proc.stdout, collector))
    timed_out = False

    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        logger.warning(f"process_timeout cmd={name} pid={proc.pid} timeout={timeout}")
        _kill_group(proc)
        await _reap(proc)
    except asyncio.CancelledError:
        logger.warning(f"process_cancelled cmd={name} pid={proc.pid}")
        _kill_group(proc)
        await _reap(proc)
        pump.cancel()
        raise
    finally:
        # Grandchildren may still hold the pipe open after the leader exits
        _kill_group(proc)

    try:
        await asyncio.wait_for(pump, timeout=KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"process_output_drain_timeout cmd={name}")

    duration_ms = int((time.monotonic() - start) * 1000)
    exit_code = -1 if timed_out else proc.returncode
    logger.info(f"process_exited cmd={name} exit_code={exit_code} duration_ms={duration_ms}")

    return ProcessResult(
        command=cmd,
        exit_code=exit_code,
        output=bytes(collector.buffer),
        duration_ms=duration_ms,
        timed_out=timed_out,
    )
