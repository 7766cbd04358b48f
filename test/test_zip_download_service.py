"""
Service-level tests for job lifecycle paths the HTTP client cannot produce:
client disconnects mid-stream and failures after the headers were sent.
"""

import asyncio
import gc
import logging

import pytest

from conftest import temp_archives
from services.errors import JobTimeoutError
from services.lifecycle import JobState
from services.models import FileEntry, ListingRequest
from services.zip_download_service import recommended_batch_size, sample_entries, select_part

HTTP_SCOPE = {
    "type": "http",
    "asgi": {"version": "3.0"},
    "http_version": "1.1",
    "method": "GET",
    "path": "/download-zip",
    "headers": [],
}


async def send_until_disconnect(response):
    """Drive the response over ASGI; the client goes away after the first body chunk."""
    first_chunk = asyncio.Event()
    messages = []

    async def receive():
        await first_chunk.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)
        if message["type"] == "http.response.body":
            first_chunk.set()
            # Client stops reading
            await asyncio.Event().wait()

    await response(dict(HTTP_SCOPE), receive, send)
    return messages


async def settle():
    """Let cancelled tasks finish and collect dropped ones, so asyncio reports leaks now."""
    await asyncio.sleep(0.05)
    gc.collect()


def crash_records(caplog):
    return [
        record
        for record in caplog.records
        if record.levelno >= logging.ERROR
        or "never retrieved" in record.getMessage()
        or "destroyed but it is pending" in record.getMessage()
    ]


class TestClientDisconnect:
    @pytest.mark.asyncio
    async def test_tempfile_disconnect_cancels_and_removes_temp_file(self, service, settings, caplog):
        download = await service.open_archive(
            ListingRequest(root_folder_id="root"), settings.profile("standard")
        )
        assert len(temp_archives(settings)) == 1

        messages = await send_until_disconnect(download.response())
        await settle()

        assert messages[0]["status"] == 200
        assert download.job.state is JobState.CANCELLED
        assert download.guard.cleaned_up
        assert temp_archives(settings) == []
        assert not service.is_active_temp_path(download.job.temp_path)
        assert crash_records(caplog) == []

    @pytest.mark.asyncio
    async def test_direct_disconnect_cancels_producer(self, service, settings, caplog):
        settings.ZIP_TRANSPORT = "direct"
        download = await service.open_archive(
            ListingRequest(root_folder_id="root"), settings.profile("standard")
        )

        await send_until_disconnect(download.response())
        await settle()

        assert download.job.state is JobState.CANCELLED
        assert download.guard.cleaned_up
        assert crash_records(caplog) == []

    @pytest.mark.asyncio
    async def test_response_is_committed_once(self, service, settings):
        download = await service.open_archive(
            ListingRequest(root_folder_id="root"), settings.profile("standard")
        )
        download.response()

        with pytest.raises(RuntimeError):
            download.response()
        download.close()


class TestArchiveJobs:
    @pytest.mark.asyncio
    async def test_completed_job_summary(self, service, settings, drive):
        drive.download_errors["z"] = RuntimeError("socket closed")
        download = await service.open_archive(
            ListingRequest(root_folder_id="root"), settings.profile("standard")
        )

        body = b"".join([chunk async for chunk in download.body()])
        download.close()

        assert len(body) == download.content_length
        assert download.job.state is JobState.COMPLETED
        assert download.job.processed_count == 3
        assert download.job.skipped_count == 1
        assert temp_archives(settings) == []

    @pytest.mark.asyncio
    async def test_direct_deadline_after_headers_aborts_stream(self, service, settings, drive, caplog):
        settings.ZIP_TRANSPORT = "direct"
        settings.ZIP_JOB_DEADLINE = 0.2
        drive.download_delay = 2
        download = await service.open_archive(
            ListingRequest(root_folder_id="root"), settings.profile("standard")
        )

        with pytest.raises(JobTimeoutError):
            async for _ in download.body():
                pass
        download.close()
        await settle()

        assert download.job.state is JobState.TIMED_OUT
        assert download.guard.cleaned_up
        messages = [record.getMessage() for record in caplog.records]
        assert not [m for m in messages if "never retrieved" in m]
        aborted = [m for m in messages if "Archive aborted" in m]
        assert len(aborted) == 1 and "deadline" in aborted[0]

    @pytest.mark.asyncio
    async def test_part_selection(self, service, settings):
        download = await service.open_archive(
            ListingRequest(root_folder_id="root"), settings.profile("standard"), part=(1, 3)
        )
        download.close()

        assert [e.relative_path for e in download.job.entries] == ["a.txt", "docs/b.txt"]


class TestPlanningHelpers:
    def test_recommended_batch_size(self):
        assert recommended_batch_size(100) == 10
        assert recommended_batch_size(101) == 5
        assert recommended_batch_size(500) == 5
        assert recommended_batch_size(501) == 2

    def test_sample_entries_is_evenly_spaced(self):
        entries = [FileEntry(id=str(i), name=str(i), relative_path=str(i)) for i in range(10)]

        assert [e.id for e in sample_entries(entries, 5)] == ["0", "2", "4", "6", "8"]
        assert sample_entries(entries, 20) == entries
        assert sample_entries([], 5) == []

    def test_select_part(self):
        entries = list(range(5))

        assert select_part(entries, 1, 2) == [0, 1, 2]
        assert select_part(entries, 2, 2) == [3, 4]
        with pytest.raises(ValueError):
            select_part(entries, 0, 2)
