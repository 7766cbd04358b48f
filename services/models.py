from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple, Union

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


@dataclass(frozen=True)
class FileEntry:
    """One remote file to include in an archive."""

    id: str
    name: str
    relative_path: str
    mime_type: str = "application/octet-stream"
    size_bytes: Optional[int] = None

    @classmethod
    def from_drive(cls, item: Dict[str, Any], prefix: str = "") -> "FileEntry":
        """Build an entry from a Drive file resource (``size`` arrives as a string)."""
        size = item.get("size")
        return cls(
            id=item["id"],
            name=item["name"],
            relative_path=f"{prefix}{item['name']}",
            mime_type=item.get("mimeType") or "application/octet-stream",
            size_bytes=int(size) if size not in (None, "") else None,
        )


def is_folder(item: Dict[str, Any]) -> bool:
    return item.get("mimeType") == FOLDER_MIME_TYPE


@dataclass(frozen=True)
class ListingRequest:
    """
    What to archive: a whole folder tree, or an explicit list of file ids.

    A non-empty ``explicit_file_ids`` always wins over ``root_folder_id``.
    """

    root_folder_id: Optional[str] = None
    explicit_file_ids: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.root_folder_id and not self.explicit_file_ids:
            raise ValueError("Either root_folder_id or explicit_file_ids is required")

    @property
    def is_explicit(self) -> bool:
        return bool(self.explicit_file_ids)

    @classmethod
    def from_query(
        cls, folder_id: Optional[str], file_ids: Optional[Union[Iterable[str], str]] = None
    ) -> "ListingRequest":
        """
        Build a request from the ``folderId`` / ``fileIds`` query parameters.

        ``file_ids`` may be a comma separated string. Blank ids are dropped and
        duplicates removed, keeping first-seen order.
        """
        if isinstance(file_ids, str):
            file_ids = file_ids.split(",")
        ids = [fid.strip() for fid in (file_ids or []) if fid and fid.strip()]
        return cls(
            root_folder_id=folder_id or None,
            explicit_file_ids=tuple(dict.fromkeys(ids)),
        )
