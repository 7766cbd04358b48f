"""
Bounded Fetch Scheduler
=======================

Downloads file contents with bounded concurrency.

- Entries are fetched in batches of ``concurrency``; the next batch starts
  only after the current one has been handed to the consumer
- Each attempt is bounded by ``per_file_timeout`` and retried with the shared
  RetryPolicy; a file that keeps failing becomes a skip, never a job failure
- Outcomes are yielded in input order (batch-sequential), independent of
  which download finished first
- Content is spooled (memory up to ``spool_max_bytes``, then a temp file), so
  a broken connection is retried instead of producing a truncated entry
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Iterator, List, Optional

import aiofiles.tempfile

from drive_client import DriveClient, is_retryable
from services.errors import FetchError
from services.models import FileEntry
from services.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_SPOOL_MAX_BYTES = 8 * 1024 * 1024


class SpooledContent:
    """Downloaded content of one entry, readable once as async chunks."""

    def __init__(self, spool, size: int, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._spool = spool
        self.size = size
        self.chunk_size = chunk_size
        self._closed = False

    async def chunks(self) -> AsyncIterator[bytes]:
        await self._spool.seek(0)
        while True:
            data = await self._spool.read(self.chunk_size)
            if not data:
                break
            yield data

    async def close(self):
        if not self._closed:
            self._closed = True
            await self._spool.close()


@dataclass
class FetchOutcome:
    """Result of fetching one entry: content, or the error that made it a skip."""

    entry: FileEntry
    content: Optional[SpooledContent] = None
    error: Optional[FetchError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.content is not None

    async def release(self):
        if self.content is not None:
            await self.content.close()


class FetchScheduler:
    """Fetch entry contents under a concurrency cap with timeout and retry."""

    def __init__(
        self,
        drive: DriveClient,
        concurrency: int = 5,
        per_file_timeout: float = 60.0,
        retry_policy: Optional[RetryPolicy] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        spool_max_bytes: int = DEFAULT_SPOOL_MAX_BYTES,
        spool_dir: Optional[str] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.drive = drive
        self.concurrency = concurrency
        self.per_file_timeout = per_file_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.chunk_size = chunk_size
        self.spool_max_bytes = spool_max_bytes
        self.spool_dir = spool_dir
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def batches(self, entries: List[FileEntry]) -> Iterator[List[FileEntry]]:
        for start in range(0, len(entries), self.concurrency):
            yield entries[start : start + self.concurrency]

    async def run(self, entries: List[FileEntry]) -> AsyncIterator[FetchOutcome]:
        """
        Yield one FetchOutcome per entry, in input order.

        Outcomes that were fetched but not yet yielded when the consumer stops
        (aclose / cancellation) are released here. Consume with
        ``contextlib.aclosing`` so that happens promptly.
        """
        for batch in self.batches(entries):
            remaining = deque(await self.fetch_batch(batch))
            try:
                while remaining:
                    yield remaining.popleft()
            finally:
                for outcome in remaining:
                    await outcome.release()

    async def fetch_batch(self, batch: List[FileEntry]) -> List[FetchOutcome]:
        """Fetch one batch concurrently; results keep the batch order."""
        tasks = [asyncio.create_task(self.fetch_one(entry)) for entry in batch]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, FetchOutcome):
                    await result.release()
            raise

    async def fetch_one(self, entry: FileEntry) -> FetchOutcome:
        """Fetch one entry with retry; failures become a skip outcome."""
        attempts = 0

        def count_attempt(attempt: int):
            nonlocal attempts
            attempts = attempt

        try:
            content = await self.retry_policy.run(
                lambda: asyncio.wait_for(self._download(entry), timeout=self.per_file_timeout),
                description=f"Fetch '{entry.relative_path}'",
                should_retry=is_retryable,
                on_attempt=count_attempt,
            )
        except Exception as e:
            reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
            return FetchOutcome(
                entry=entry,
                error=FetchError(
                    f"Fetching '{entry.relative_path}' failed after {attempts} attempt(s): {reason}",
                    file_id=entry.id,
                    attempts=attempts,
                ),
                attempts=attempts,
            )

        return FetchOutcome(entry=entry, content=content, attempts=attempts)

    async def _download(self, entry: FileEntry) -> SpooledContent:
        spool = await aiofiles.tempfile.SpooledTemporaryFile(
            max_size=self.spool_max_bytes, mode="w+b", dir=self.spool_dir
        )
        size = 0
        try:
            async with self.drive.open_content(entry.id, self.chunk_size) as chunks:
                async for chunk in chunks:
                    await spool.write(chunk)
                    size += len(chunk)
        except BaseException:
            await spool.close()
            raise

        if entry.size_bytes is not None and entry.size_bytes != size:
            self.logger.debug(
                f"'{entry.relative_path}': listed {entry.size_bytes} bytes, received {size}"
            )
        return SpooledContent(spool, size, self.chunk_size)
