"""
Shared fixtures: an in-memory Drive, service and app wired to it.
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from config import Settings
from drive_client import DriveNotFoundError, get_drive_client
from services.models import FOLDER_MIME_TYPE
from services.zip_download_service import ZipDownloadService, get_zip_service


def drive_folder(folder_id: str, name: str) -> Dict[str, Any]:
    return {"id": folder_id, "name": name, "mimeType": FOLDER_MIME_TYPE}


def drive_file(file_id: str, name: str, size: Optional[int] = None, mime_type: str = "text/plain"):
    item = {"id": file_id, "name": name, "mimeType": mime_type}
    if size is not None:
        item["size"] = str(size)
    return item


class FakeDriveClient:
    """
    In-memory stand-in for DriveClient.

    folders:  folder id -> child resources (in listing order)
    contents: file id -> bytes
    download_errors: file id -> exception raised on every download attempt
    """

    def __init__(
        self,
        folders: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        contents: Optional[Dict[str, bytes]] = None,
        page_size: int = 1000,
    ):
        self.folders = folders or {}
        self.contents = contents or {}
        self.page_size = page_size
        self.download_errors: Dict[str, Exception] = {}
        self.download_delay = 0.0
        self.list_calls: List[str] = []
        self.download_calls: List[str] = []
        self.active_downloads = 0
        self.max_active_downloads = 0
        self.uploads: List[Dict[str, Any]] = []
        self.renames: List[tuple] = []
        self.fail_writes: Optional[Exception] = None

    def _resources(self) -> Dict[str, Dict[str, Any]]:
        return {item["id"]: item for items in self.folders.values() for item in items}

    async def list_children(self, folder_id: str, page_token: Optional[str] = None, page_size: int = 1000):
        self.list_calls.append(folder_id)
        if folder_id not in self.folders:
            raise DriveNotFoundError(f"List folder {folder_id}: not found", status_code=404)
        items = self.folders[folder_id]
        start = int(page_token or 0)
        end = start + min(page_size, self.page_size)
        next_token = str(end) if end < len(items) else None
        return list(items[start:end]), next_token

    async def get_metadata(self, file_id: str) -> Dict[str, Any]:
        resource = self._resources().get(file_id)
        if resource is None:
            raise DriveNotFoundError(f"Get metadata {file_id}: not found", status_code=404)
        return dict(resource)

    @asynccontextmanager
    async def open_content(self, file_id: str, chunk_size: int = 64 * 1024):
        self.download_calls.append(file_id)
        self.active_downloads += 1
        self.max_active_downloads = max(self.max_active_downloads, self.active_downloads)
        try:
            if self.download_delay:
                await asyncio.sleep(self.download_delay)
            if file_id in self.download_errors:
                raise self.download_errors[file_id]
            if file_id not in self.contents:
                raise DriveNotFoundError(f"Download {file_id}: not found", status_code=404)
            yield self._chunks(self.contents[file_id], chunk_size)
        finally:
            self.active_downloads -= 1

    @staticmethod
    async def _chunks(data: bytes, chunk_size: int):
        for start in range(0, len(data), chunk_size):
            yield data[start : start + chunk_size]

    async def upload_file(self, name, content, mime_type=None, parent_folder_id=None):
        if self.fail_writes:
            raise self.fail_writes
        self.uploads.append(
            {"name": name, "content": content, "mime_type": mime_type, "parent": parent_folder_id}
        )
        return {"id": f"up{len(self.uploads)}", "name": name}

    async def rename_file(self, file_id, new_name):
        if self.fail_writes:
            raise self.fail_writes
        self.renames.append((file_id, new_name))
        return {"id": file_id, "name": new_name, "mimeType": "text/plain"}

    async def aclose(self):
        pass


def build_tree_drive() -> FakeDriveClient:
    """
    root/
      a.txt
      docs/
        b.txt
        deep/
          c.txt
      z.txt
    """
    folders = {
        "root": [
            drive_file("a", "a.txt", 5),
            drive_folder("docs", "docs"),
            drive_file("z", "z.txt", 3),
        ],
        "docs": [drive_file("b", "b.txt", 6), drive_folder("deep", "deep")],
        "deep": [drive_file("c", "c.txt", 7)],
        "empty": [],
    }
    contents = {"a": b"alpha", "b": b"bravo!", "c": b"charlie", "z": b"zed"}
    return FakeDriveClient(folders, contents)


@pytest.fixture
def drive() -> FakeDriveClient:
    return build_tree_drive()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        CLIENT_ID="id",
        CLIENT_SECRET="secret",
        REFRESH_TOKEN="refresh",
        ZIP_RETRY_DELAY=0,
        ZIP_MAX_RETRIES=1,
        ZIP_FILE_TIMEOUT=5,
        ZIP_JOB_DEADLINE=10,
        TEMP_DIR=str(tmp_path),
    )


@pytest.fixture
def service(drive, settings) -> ZipDownloadService:
    return ZipDownloadService(drive, settings)


@pytest.fixture
def app(service, drive):
    from main import create_app

    application = create_app()
    application.dependency_overrides[get_zip_service] = lambda: service
    application.dependency_overrides[get_drive_client] = lambda: drive
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client


def temp_archives(settings: Settings) -> List[Path]:
    return sorted(Path(settings.TEMP_DIR).glob(f"{settings.TEMP_FILE_PREFIX}*.zip"))

