"""
Log Streamer - live tail of the shared service log into an HTTP response.

The response body reads from a ResponseSink. While a LogStreamer is running it
is the only writer to that sink; the caller writes nothing until stop() has
returned.
"""
import asyncio
import logging
import os
from contextlib import suppress
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional

logger = logging.getLogger(__name__)

_CLOSED = object()

SINK_MAX_CHUNKS = 256
READ_HINT_BYTES = 64 * 1024


class SinkClosedError(Exception):
    """Write attempted on a closed sink (client gone or response finished)."""
    pass


class ResponseSink:
    """
    Byte chunks handed from a producer task to a streaming response body.

    The buffer is bounded, so a slow reader holds the writer back instead of
    letting lines pile up in memory.
    """

    def __init__(self, maxsize: int = SINK_MAX_CHUNKS):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, data: bytes) -> None:
        """Queue a chunk, waiting while the buffer is full."""
        if self._closed:
            raise SinkClosedError()
        await self._queue.put(data)

    async def close(self) -> None:
        """End of data; the reader still gets everything already queued."""
        if not self._closed:
            self._closed = True
            await self._queue.put(_CLOSED)

    def abort(self) -> None:
        """Reader gone: drop queued chunks and fail later writes."""
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is _CLOSED:
                return
            yield chunk


class LogStreamer:
    """Forwards lines appended to a log file into a sink until stopped."""

    def __init__(self, path: Path, sink: ResponseSink, poll_interval: float = 0.1):
        self.path = Path(path)
        self.sink = sink
        self.poll_interval = poll_interval
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._offset = 0
        self._partial = b""
        self.lines_sent = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start tailing from the current end of the file."""
        if self._task is not None:
            return
        try:
            self._offset = self.path.stat().st_size
        except FileNotFoundError:
            self._offset = 0
        self._task = asyncio.create_task(self._run())

    def request_stop(self) -> None:
        """Signal the tail task without waiting for it."""
        self._stop.set()

    async def stop(self) -> None:
        """Signal the tail task and wait for it to finish. Idempotent."""
        self.request_stop()
        if self._task is None:
            return
        with suppress(asyncio.CancelledError):
            await self._task

    async def _wait(self) -> None:
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)

    def _open(self) -> Optional[BinaryIO]:
        try:
            file = open(self.path, "rb")
        except FileNotFoundError:
            return None
        size = os.fstat(file.fileno()).st_size
        # Truncated or rotated since start: read the new file from the top
        file.seek(self._offset if self._offset <= size else 0)
        return file

    async def _forward(self, file: BinaryIO) -> bool:
        """Send every complete line available now. Returns True if any was read."""
        read_any = False
        while True:
            lines = await asyncio.to_thread(file.readlines, READ_HINT_BYTES)
            if not lines:
                return read_any
            read_any = True
            for data in lines:
                if not data.endswith(b"\n"):
                    self._partial += data
                    continue
                line = self._partial + data
                self._partial = b""
                await self.sink.write(line)
                self.lines_sent += 1

    async def _run(self) -> None:
        file: Optional[BinaryIO] = None
        try:
            while not self._stop.is_set():
                if file is None:
                    file = await asyncio.to_thread(self._open)
                    if file is None:
                        await self._wait()
                        continue
                if not await self._forward(file):
                    await self._wait()
            if file is not None:
                await self._forward(file)
        except SinkClosedError:
            logger.debug("log_stream_sink_closed")
        except OSError as e:
            logger.warning(f"log_stream_failed error={type(e).__name__}")
        finally:
            if file is not None:
                file.close()
