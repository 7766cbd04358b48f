"""
Streaming Transport
===================

Two ways to get archive bytes to the client:

- direct:   QueueSink between the producer task and the response body; headers
            are sent before the archive exists, so a late failure can only
            abort the connection
- tempfile: TempFileSink materialises the archive first; headers (with
            Content-Length) are sent only after finalize, so failures before
            that still get a JSON error

ArchiveStreamingResponse runs a close hook once the ASGI call ends for any
reason (finished, client disconnect, error), which is where the job's
cleanup happens.
"""

import asyncio
import logging
import secrets
import time
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import aiofiles
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from services.archive_multiplexer import ArchiveSink
from services.errors import ArchiveEncodeError, TransportError

logger = logging.getLogger(__name__)

ZIP_MEDIA_TYPE = "application/zip"


class TransportStrategy(str, Enum):
    DIRECT = "direct"
    TEMP_FILE = "tempfile"


# =============================================================================
# SINKS
# =============================================================================


class TempFileSink(ArchiveSink):
    """Writes the archive into a local temp file."""

    def __init__(self, path: Path):
        self.path = path
        self._file = None

    async def open(self):
        self._file = await aiofiles.open(self.path, "wb")

    async def write(self, data: bytes):
        if self._file is None:
            raise ArchiveEncodeError(f"Temp file {self.path.name} is not open")
        try:
            await self._file.write(data)
        except OSError as e:
            raise ArchiveEncodeError(f"Failed to write temp file {self.path.name}: {e}") from e

    async def close(self):
        if self._file is not None:
            file, self._file = self._file, None
            await file.close()


class QueueSink(ArchiveSink):
    """Hands archive chunks to the response body through a bounded queue."""

    def __init__(self, max_chunks: int = 8):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_chunks)

    async def write(self, data: bytes):
        await self.queue.put(data)

    async def close(self):
        await self.queue.put(None)


async def relay_queue(queue: asyncio.Queue, producer: asyncio.Task) -> AsyncIterator[bytes]:
    """
    Yield chunks from ``queue`` until the end marker (None).

    If ``producer`` fails before sending the end marker, its exception is
    raised here.
    """
    while True:
        if producer.done():
            producer.result()
            chunk = await queue.get()
        else:
            getter = asyncio.ensure_future(queue.get())
            try:
                await asyncio.wait({getter, producer}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not getter.done():
                    getter.cancel()
            # Producer finished first; the cancelled getter is still pending
            if not getter.done():
                continue
            chunk = getter.result()

        if chunk is None:
            return
        yield chunk


# =============================================================================
# TEMP FILES
# =============================================================================


def make_temp_path(temp_dir: str, prefix: str = "folder-") -> Path:
    """``<temp_dir>/<prefix><epoch ms>-<random>.zip``"""
    return Path(temp_dir) / f"{prefix}{int(time.time() * 1000)}-{secrets.token_hex(5)}.zip"


def remove_temp_file(path: Path):
    """Delete a temp archive; a missing file is not an error."""
    try:
        path.unlink(missing_ok=True)
        logger.debug(f"Temp file removed: {path.name}")
    except OSError as e:
        logger.error(f"Failed to remove temp file {path}: {e}")


async def file_chunks(path: Path, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
    try:
        async with aiofiles.open(path, "rb") as f:
            while True:
                data = await f.read(chunk_size)
                if not data:
                    break
                yield data
    except OSError as e:
        raise TransportError(f"Failed to read temp file {path.name}: {e}") from e


def content_disposition(filename: str) -> str:
    return f'attachment; filename="{filename}"'


# =============================================================================
# RESPONSE
# =============================================================================


class ArchiveStreamingResponse(StreamingResponse):
    """
    StreamingResponse that always runs ``on_close`` after the ASGI call.

    ``on_close`` runs after the body iterator has been closed, whether the
    body finished, the client disconnected or sending failed.
    """

    def __init__(
        self,
        content: AsyncIterator[bytes],
        on_close: Callable[[], None],
        filename: str = "folder.zip",
        content_length: Optional[int] = None,
    ):
        headers = {"Content-Disposition": content_disposition(filename)}
        if content_length is not None:
            headers["Content-Length"] = str(content_length)
        super().__init__(content, media_type=ZIP_MEDIA_TYPE, headers=headers)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            aclose = getattr(self.body_iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug(f"Body iterator close raised: {e!r}")
            self._on_close()
