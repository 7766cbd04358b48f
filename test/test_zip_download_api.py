"""
API tests for the ZIP download endpoints.
"""

import io
import zipfile

import pytest
from httpx import AsyncClient

from conftest import temp_archives
from drive_client import DriveNotFoundError


def zip_names(content: bytes):
    return zipfile.ZipFile(io.BytesIO(content)).namelist()


class TestDownloadZip:
    @pytest.mark.asyncio
    async def test_folder_download(self, client: AsyncClient, settings):
        response = await client.get("/download-zip", params={"folderId": "root"})

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert response.headers["content-disposition"] == 'attachment; filename="folder.zip"'
        assert int(response.headers["content-length"]) == len(response.content)
        archive = zipfile.ZipFile(io.BytesIO(response.content))
        assert archive.namelist() == ["a.txt", "docs/b.txt", "docs/deep/c.txt", "z.txt"]
        assert archive.read("docs/deep/c.txt") == b"charlie"
        assert temp_archives(settings) == []

    @pytest.mark.asyncio
    async def test_selected_files(self, client: AsyncClient):
        response = await client.get("/download-zip", params={"folderId": "root", "fileIds": "c,a"})

        assert response.status_code == 200
        assert zip_names(response.content) == ["c.txt", "a.txt"]

    @pytest.mark.asyncio
    async def test_failing_file_is_left_out(self, client: AsyncClient, drive):
        drive.download_errors["b"] = DriveNotFoundError("gone", status_code=404)

        response = await client.get("/download-zip", params={"folderId": "root"})

        assert response.status_code == 200
        assert zip_names(response.content) == ["a.txt", "docs/deep/c.txt", "z.txt"]

    @pytest.mark.asyncio
    async def test_direct_transport(self, client: AsyncClient, settings):
        settings.ZIP_TRANSPORT = "direct"

        response = await client.get("/download-zip", params={"folderId": "root"})

        assert response.status_code == 200
        assert "content-length" not in response.headers
        assert zip_names(response.content) == ["a.txt", "docs/b.txt", "docs/deep/c.txt", "z.txt"]

    @pytest.mark.asyncio
    async def test_large_profile(self, client: AsyncClient):
        response = await client.get("/download-zip", params={"folderId": "root", "profile": "large"})

        assert response.status_code == 200
        assert len(zip_names(response.content)) == 4

    @pytest.mark.asyncio
    async def test_missing_parameters(self, client: AsyncClient):
        response = await client.get("/download-zip")

        assert response.status_code == 400
        assert "error" in response.json()

    @pytest.mark.asyncio
    async def test_file_ids_without_folder_is_400(self, client: AsyncClient):
        response = await client.get("/download-zip", params={"fileIds": "a"})

        assert response.status_code == 400
        assert response.json() == {"error": "folderId is required"}

    @pytest.mark.asyncio
    async def test_unknown_profile(self, client: AsyncClient):
        response = await client.get("/download-zip", params={"folderId": "root", "profile": "turbo"})

        assert response.status_code == 400
        assert "turbo" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_empty_folder_is_404_without_fetching(self, client: AsyncClient, drive, settings):
        response = await client.get("/download-zip", params={"folderId": "empty"})

        assert response.status_code == 404
        assert "error" in response.json()
        assert drive.download_calls == []
        assert temp_archives(settings) == []

    @pytest.mark.asyncio
    async def test_unknown_folder_is_500(self, client: AsyncClient):
        response = await client.get("/download-zip", params={"folderId": "nope"})

        assert response.status_code == 500
        assert "nope" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_deadline_returns_408_and_removes_temp_file(self, client: AsyncClient, drive, settings):
        settings.ZIP_JOB_DEADLINE = 0.2
        drive.download_delay = 2

        response = await client.get("/download-zip", params={"folderId": "root"})

        assert response.status_code == 408
        assert "deadline" in response.json()["error"]
        assert temp_archives(settings) == []


class TestDownloadParts:
    @pytest.mark.asyncio
    async def test_download_info(self, client: AsyncClient):
        response = await client.get("/download-info", params={"folderId": "root"})

        assert response.status_code == 200
        assert response.json() == {
            "totalFiles": 4,
            "totalSize": 21,
            "recommendedBatchSize": 10,
            "estimatedBatches": 1,
            "sampledFiles": 4,
        }

    @pytest.mark.asyncio
    async def test_download_info_requires_folder(self, client: AsyncClient):
        response = await client.get("/download-info")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_multi_zip_plan(self, client: AsyncClient, settings):
        settings.MULTI_ZIP_THRESHOLD = 2
        settings.MULTI_ZIP_CHUNK_SIZE = 3

        response = await client.get("/download-multi-zip", params={"folderId": "root"})

        data = response.json()
        assert response.status_code == 200
        assert data["totalFiles"] == 4
        assert data["totalParts"] == 2
        assert data["chunkSize"] == 2
        assert data["downloadUrls"] == [
            "http://test/download-zip-part?folderId=root&part=1&total=2",
            "http://test/download-zip-part?folderId=root&part=2&total=2",
        ]

    @pytest.mark.asyncio
    async def test_multi_zip_single_part_below_threshold(self, client: AsyncClient):
        response = await client.get("/download-multi-zip", params={"folderId": "root"})

        assert response.json()["totalParts"] == 1

    @pytest.mark.asyncio
    async def test_download_part(self, client: AsyncClient):
        response = await client.get(
            "/download-zip-part", params={"folderId": "root", "part": 2, "total": 2}
        )

        assert response.status_code == 200
        assert response.headers["content-disposition"] == 'attachment; filename="folder-part-2-of-2.zip"'
        assert zip_names(response.content) == ["docs/deep/c.txt", "z.txt"]

    @pytest.mark.asyncio
    async def test_part_out_of_range(self, client: AsyncClient):
        response = await client.get(
            "/download-zip-part", params={"folderId": "root", "part": 3, "total": 2}
        )

        assert response.status_code == 400


class TestHealthEndpoint:
    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "ok"
        assert "/download-zip" in data["endpoints"]
        assert "timestamp" in data
