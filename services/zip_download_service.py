"""
Drive ZIP Download Service
==========================

Builds ZIP archives of Google Drive folders (or hand-picked files) and
streams them to the client.

Pipeline:
    ListingResolver -> FetchScheduler -> ArchiveMultiplexer -> transport
with a LifecycleGuard owning the deadline, state and cleanup of each job.

Features:
- One configurable pipeline; route variants are PipelineProfiles
- Bounded concurrency, per-file timeout and retry; failing files are skipped
- Deterministic entry order (batch-sequential)
- Direct streaming or temp-file-then-serve, per profile
- Temp files deleted exactly once, including on client disconnect
- Planning helpers for the download-info and multi-part endpoints
"""

import asyncio
import logging
import math
from contextlib import aclosing
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from config import PipelineProfile, Settings, get_settings
from drive_client import DriveClient, get_drive_client
from services.archive_multiplexer import ArchiveMultiplexer, ArchiveSink, CompressionLevel
from services.errors import ArchiveJobError, JobTimeoutError, NoFilesFoundError
from services.fetch_scheduler import FetchScheduler
from services.lifecycle import ArchiveJob, JobState, LifecycleGuard
from services.listing_resolver import ListingResolver
from services.models import FileEntry, ListingRequest
from services.retry_policy import RetryPolicy
from services.transport import (
    ArchiveStreamingResponse,
    QueueSink,
    TempFileSink,
    TransportStrategy,
    file_chunks,
    make_temp_path,
    relay_queue,
    remove_temp_file,
)

logger = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 50


def recommended_batch_size(total_files: int) -> int:
    """Smaller batches for bigger jobs."""
    if total_files <= 100:
        return 10
    if total_files <= 500:
        return 5
    return 2


def sample_entries(entries: List[FileEntry], sample_size: int) -> List[FileEntry]:
    """Evenly spaced sample of at most ``sample_size`` entries."""
    if sample_size <= 0 or not entries:
        return []
    if len(entries) <= sample_size:
        return list(entries)
    step = len(entries) / sample_size
    return [entries[int(i * step)] for i in range(sample_size)]


def select_part(entries: List[FileEntry], part: int, total: int) -> List[FileEntry]:
    """
    The ``part``-th (1-based) of ``total`` contiguous slices of ``entries``.

    Raises:
        ValueError: If part/total are out of range
    """
    if total < 1 or not 1 <= part <= total:
        raise ValueError(f"part must be between 1 and total ({total}), got {part}")
    chunk = math.ceil(len(entries) / total)
    return entries[(part - 1) * chunk : part * chunk]


class ArchiveDownload:
    """
    A job whose response is ready to be committed.

    For the tempfile transport the archive already exists on disk; for the
    direct transport it is produced while the body is being sent.
    """

    def __init__(
        self,
        service: "ZipDownloadService",
        job: ArchiveJob,
        guard: LifecycleGuard,
        profile: PipelineProfile,
        filename: str,
        content_length: Optional[int] = None,
    ):
        self.service = service
        self.job = job
        self.guard = guard
        self.profile = profile
        self.filename = filename
        self.content_length = content_length
        self._finished = False

    @property
    def transport(self) -> TransportStrategy:
        return TransportStrategy(self.profile.transport)

    def response(self) -> ArchiveStreamingResponse:
        """
        Commit the job's single response to the archive stream.

        Raises:
            RuntimeError: If a response was already committed for this job
        """
        if not self.guard.try_commit():
            raise RuntimeError(f"[{self.job.job_id}] Response already committed")
        return ArchiveStreamingResponse(
            self.body(),
            on_close=self.close,
            filename=self.filename,
            content_length=self.content_length,
        )

    async def body(self) -> AsyncIterator[bytes]:
        if self.transport is TransportStrategy.TEMP_FILE:
            chunks = file_chunks(self.job.temp_path, self.profile.chunk_size)
        else:
            chunks = self._direct_chunks()

        try:
            async with aclosing(chunks) as stream:
                async for chunk in stream:
                    yield chunk
        except Exception as e:
            self.guard.transition(JobState.FAILED)
            self.service.logger.error(
                f"[{self.job.job_id}] ✗ Archive aborted after headers were sent, "
                f"closing connection: {e}"
            )
            raise
        self._finished = True

    async def _direct_chunks(self) -> AsyncIterator[bytes]:
        sink = QueueSink()
        producer = self.guard.track(
            asyncio.create_task(self.service._run_direct(self.job, self.guard, self.profile, sink))
        )
        async with aclosing(relay_queue(sink.queue, producer)) as chunks:
            async for chunk in chunks:
                yield chunk

    def close(self):
        """Close hook of the response: settle the final state and clean up."""
        if self._finished:
            self.guard.transition(JobState.COMPLETED)
            self.service.logger.info(f"[{self.job.job_id}] ✓ Download complete: {self.job.summary()}")
        elif not self.guard.state.is_terminal:
            self.guard.cancel("client disconnected before the archive was fully sent")
        self.guard.cleanup()


class ZipDownloadService:
    """
    Production service for streaming ZIP archives of Drive content.

    One instance per process; jobs share only the Drive client.
    """

    def __init__(self, drive: DriveClient, settings: Optional[Settings] = None):
        self.drive = drive
        self.settings = settings or get_settings()
        self._active_temp_paths: Set[Path] = set()
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # =========================================================================
    # COMPONENTS
    # =========================================================================

    def build_resolver(self) -> ListingResolver:
        return ListingResolver(
            self.drive,
            retry_policy=RetryPolicy(
                max_retries=self.settings.LISTING_MAX_RETRIES,
                initial_delay=self.settings.ZIP_RETRY_DELAY,
            ),
            page_size=self.settings.DRIVE_LIST_PAGE_SIZE,
            max_depth=self.settings.MAX_FOLDER_DEPTH,
        )

    def build_scheduler(self, profile: PipelineProfile) -> FetchScheduler:
        return FetchScheduler(
            self.drive,
            concurrency=profile.concurrency,
            per_file_timeout=profile.per_file_timeout,
            retry_policy=RetryPolicy(
                max_retries=profile.max_retries,
                initial_delay=profile.retry_delay,
            ),
            chunk_size=profile.chunk_size,
            spool_max_bytes=profile.spool_max_bytes,
        )

    def is_active_temp_path(self, path: Path) -> bool:
        """True while a running job owns ``path`` (the sweeper leaves it alone)."""
        return Path(path) in self._active_temp_paths

    def _release_temp_file(self, path: Path):
        remove_temp_file(path)
        self._active_temp_paths.discard(path)

    # =========================================================================
    # ARCHIVE JOBS
    # =========================================================================

    async def open_archive(
        self,
        listing_request: ListingRequest,
        profile: PipelineProfile,
        filename: str = "folder.zip",
        part: Optional[Tuple[int, int]] = None,
    ) -> ArchiveDownload:
        """
        Start an archive job and run it up to the point where the response
        can be committed.

        Args:
            listing_request: What to archive
            profile: Pipeline configuration (concurrency, timeouts, transport...)
            filename: Download filename
            part: Optional (part, total) to archive one slice of the listing

        Returns:
            ArchiveDownload ready for ``response()``

        Raises:
            ArchiveJobError: Resolution failed, nothing to archive, deadline
                expired or the archive could not be built. The job is already
                cleaned up when this is raised.
        """
        job = ArchiveJob()
        guard = LifecycleGuard(job, profile.deadline)
        guard.arm()

        try:
            guard.transition(JobState.LISTING)
            source = (
                f"{len(listing_request.explicit_file_ids)} selected files"
                if listing_request.is_explicit
                else f"folder {listing_request.root_folder_id}"
            )
            self.logger.info(f"[{job.job_id}] ZIP download started for {source} ({profile.name})")

            entries = await guard.within_deadline(self.build_resolver().resolve(listing_request))
            if part is not None:
                entries = select_part(entries, *part)
                if not entries:
                    raise NoFilesFoundError(f"Part {part[0]}/{part[1]} contains no files")
            job.entries = entries
            self.logger.info(f"[{job.job_id}] {len(entries)} files prepared for download")

            download = ArchiveDownload(self, job, guard, profile, filename)
            if download.transport is TransportStrategy.TEMP_FILE:
                download.content_length = await self._build_temp_file(job, guard, profile)
            return download

        except asyncio.CancelledError:
            guard.cancel("request cancelled before the response was sent")
            raise
        except Exception as e:
            guard.transition(JobState.FAILED)
            guard.try_commit()
            guard.cleanup()
            if isinstance(e, ArchiveJobError):
                e.job_id = e.job_id or job.job_id
                self.logger.warning(f"[{job.job_id}] ZIP download failed ({job.state.value}): {e}")
            else:
                self.logger.error(f"[{job.job_id}] ZIP download error: {e}", exc_info=True)
            raise

    async def _build_temp_file(
        self, job: ArchiveJob, guard: LifecycleGuard, profile: PipelineProfile
    ) -> int:
        path = make_temp_path(self.settings.TEMP_DIR, self.settings.TEMP_FILE_PREFIX)
        job.temp_path = path
        self._active_temp_paths.add(path)
        guard.register_cleanup(lambda: self._release_temp_file(path))

        sink = TempFileSink(path)
        try:
            await sink.open()
            total = await guard.within_deadline(self._produce(job, guard, profile, sink))
        finally:
            await sink.close()
        guard.disarm()
        return total

    async def _run_direct(
        self,
        job: ArchiveJob,
        guard: LifecycleGuard,
        profile: PipelineProfile,
        sink: QueueSink,
    ) -> int:
        try:
            total = await guard.within_deadline(self._produce(job, guard, profile, sink))
        except JobTimeoutError:
            raise
        except Exception:
            guard.transition(JobState.FAILED)
            raise
        guard.disarm()
        return total

    async def _produce(
        self,
        job: ArchiveJob,
        guard: LifecycleGuard,
        profile: PipelineProfile,
        sink: ArchiveSink,
    ) -> int:
        """Fetch every entry, append in order, finalize. Returns archive size."""
        guard.transition(JobState.FETCHING)
        compression = CompressionLevel(profile.compression_for(len(job.entries)))
        multiplexer = ArchiveMultiplexer(sink, compression)
        scheduler = self.build_scheduler(profile)
        total_entries = len(job.entries)

        async with aclosing(scheduler.run(job.entries)) as outcomes:
            async for outcome in outcomes:
                appended = False
                size = 0
                try:
                    if outcome.ok:
                        size = outcome.content.size
                        appended = await multiplexer.append(
                            outcome.content.chunks(),
                            outcome.entry.relative_path,
                            timestamp=datetime.now(),
                            size_hint=size,
                        )
                    else:
                        self.logger.warning(f"[{job.job_id}] Skipping file: {outcome.error}")
                finally:
                    await outcome.release()

                done = job.record_processed(size) if appended else job.record_skipped()
                if job.accounted % PROGRESS_LOG_EVERY == 0:
                    self.logger.info(
                        f"[{job.job_id}] {job.accounted}/{total_entries} files processed"
                    )
                if done:
                    break

        if not job.is_complete:
            raise RuntimeError(
                f"[{job.job_id}] Fetch finished with {job.accounted}/{total_entries} entries accounted"
            )

        guard.transition(JobState.FINALIZING)
        self.logger.info(f"[{job.job_id}] All files added, finalizing ZIP...")
        total_bytes = await multiplexer.finalize()
        await sink.close()

        if job.skipped_count:
            self.logger.warning(
                f"[{job.job_id}] {job.skipped_count}/{total_entries} files skipped"
            )
        self.logger.info(
            f"[{job.job_id}] ✓ ZIP created: {total_bytes} bytes, "
            f"{job.processed_count} entries ({compression.value})"
        )
        return total_bytes

    # =========================================================================
    # PLANNING
    # =========================================================================

    async def resolve_entries(self, listing_request: ListingRequest) -> List[FileEntry]:
        """
        Resolve a listing outside of an archive job.

        Raises:
            ResolutionError / NoFilesFoundError: As for ListingResolver.resolve
            JobTimeoutError: Listing took longer than ZIP_JOB_DEADLINE
        """
        try:
            return await asyncio.wait_for(
                self.build_resolver().resolve(listing_request),
                timeout=self.settings.ZIP_JOB_DEADLINE,
            )
        except asyncio.TimeoutError:
            raise JobTimeoutError("Listing timed out") from None

    async def describe_folder(self, folder_id: str) -> Dict[str, Any]:
        """
        Estimate a folder download.

        The total size is extrapolated from an evenly spaced sample of entries
        whose size Drive reports (native Google documents have none).

        Returns:
            Dict with totalFiles, totalSize, recommendedBatchSize,
            estimatedBatches and sampledFiles
        """
        entries = await self.resolve_entries(ListingRequest(root_folder_id=folder_id))
        sample = sample_entries(entries, self.settings.DOWNLOAD_INFO_SAMPLE_SIZE)
        sizes = [entry.size_bytes for entry in sample if entry.size_bytes is not None]
        average = sum(sizes) / len(sizes) if sizes else 0
        batch_size = recommended_batch_size(len(entries))

        return {
            "totalFiles": len(entries),
            "totalSize": int(average * len(entries)),
            "recommendedBatchSize": batch_size,
            "estimatedBatches": math.ceil(len(entries) / batch_size),
            "sampledFiles": len(sample),
        }

    async def plan_parts(self, folder_id: str) -> Dict[str, Any]:
        """
        Split a folder download into several archives.

        Returns:
            Dict with totalFiles, totalParts and chunkSize
        """
        entries = await self.resolve_entries(ListingRequest(root_folder_id=folder_id))
        total_files = len(entries)
        if total_files <= self.settings.MULTI_ZIP_THRESHOLD:
            total_parts = 1
        else:
            total_parts = math.ceil(total_files / self.settings.MULTI_ZIP_CHUNK_SIZE)

        return {
            "totalFiles": total_files,
            "totalParts": total_parts,
            "chunkSize": math.ceil(total_files / total_parts),
        }


# Global instance
_zip_service: Optional[ZipDownloadService] = None


def get_zip_service() -> ZipDownloadService:
    """Get or create the ZIP download service singleton."""
    global _zip_service
    if _zip_service is None:
        _zip_service = ZipDownloadService(get_drive_client(), get_settings())
    return _zip_service
