"""
Remote Listing Resolver
=======================

Turns a ListingRequest into the flat, ordered list of FileEntry objects to
archive.

- Folder mode walks the tree depth-first with an explicit stack, paging
  through each folder; a subfolder is expanded where it is met, before later
  siblings and before the folder's next page.
- Explicit mode fetches metadata per id and skips ids that fail.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from drive_client import DriveAPIError, DriveClient, DriveNotFoundError, is_retryable
from services.errors import NoFilesFoundError, ResolutionError
from services.models import FileEntry, ListingRequest, is_folder
from services.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class _FolderFrame:
    folder_id: str
    prefix: str
    depth: int
    pending: Deque[Dict[str, Any]] = field(default_factory=deque)
    page_token: Optional[str] = None
    exhausted: bool = False


class ListingResolver:
    """Resolve folder trees or explicit id lists into file entries."""

    def __init__(
        self,
        drive: DriveClient,
        retry_policy: Optional[RetryPolicy] = None,
        page_size: int = 1000,
        max_depth: int = 64,
    ):
        self.drive = drive
        self.retry_policy = retry_policy or RetryPolicy(max_retries=2)
        self.page_size = page_size
        self.max_depth = max_depth
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def resolve(self, request: ListingRequest) -> List[FileEntry]:
        """
        Resolve a listing request.

        Args:
            request: Folder or explicit-id request

        Returns:
            Ordered list of FileEntry

        Raises:
            ResolutionError: Root folder invalid, listing API unreachable, or depth cap hit
            NoFilesFoundError: Nothing to archive
        """
        if request.is_explicit:
            entries = await self.resolve_explicit(list(request.explicit_file_ids))
            source = f"{len(request.explicit_file_ids)} selected ids"
        else:
            entries = await self.resolve_folder(request.root_folder_id)
            source = f"folder {request.root_folder_id}"

        if not entries:
            raise NoFilesFoundError(f"No files found in {source}")

        self.logger.info(f"Resolved {len(entries)} files from {source}")
        return entries

    async def resolve_folder(self, root_folder_id: str) -> List[FileEntry]:
        """List every non-folder descendant of ``root_folder_id``."""
        entries: List[FileEntry] = []
        stack: List[_FolderFrame] = [_FolderFrame(root_folder_id, "", 0)]

        while stack:
            frame = stack[-1]

            if not frame.pending:
                if frame.exhausted:
                    stack.pop()
                    continue
                files, next_token = await self._list_page(frame.folder_id, frame.page_token)
                frame.pending.extend(files)
                frame.page_token = next_token
                frame.exhausted = next_token is None
                continue

            item = frame.pending.popleft()
            if not is_folder(item):
                entries.append(FileEntry.from_drive(item, frame.prefix))
                continue

            if any(ancestor.folder_id == item["id"] for ancestor in stack):
                self.logger.warning(
                    f"Folder {item['id']} ({frame.prefix}{item['name']}) is its own ancestor, skipping"
                )
                continue
            if frame.depth + 1 > self.max_depth:
                raise ResolutionError(
                    f"Folder nesting exceeds {self.max_depth} levels at '{frame.prefix}{item['name']}'"
                )
            stack.append(
                _FolderFrame(item["id"], f"{frame.prefix}{item['name']}/", frame.depth + 1)
            )

        return entries

    async def _list_page(self, folder_id: str, page_token: Optional[str]):
        try:
            return await self.retry_policy.run(
                lambda: self.drive.list_children(folder_id, page_token, self.page_size),
                description=f"List folder {folder_id}",
                should_retry=is_retryable,
            )
        except DriveNotFoundError as e:
            raise ResolutionError(f"Folder not found: {folder_id}") from e
        except DriveAPIError as e:
            raise ResolutionError(f"Listing folder {folder_id} failed: {e}") from e

    async def resolve_explicit(self, file_ids: List[str]) -> List[FileEntry]:
        """Fetch metadata for each id; ids that fail are logged and skipped."""
        entries: List[FileEntry] = []

        for file_id in file_ids:
            try:
                item = await self.retry_policy.run(
                    lambda: self.drive.get_metadata(file_id),
                    description=f"Get metadata {file_id}",
                    should_retry=is_retryable,
                )
            except DriveAPIError as e:
                self.logger.warning(f"File {file_id} could not be resolved, skipping: {e}")
                continue

            if is_folder(item):
                self.logger.warning(f"Selected id {file_id} is a folder, skipping")
                continue
            entries.append(FileEntry.from_drive(item))

        return entries
