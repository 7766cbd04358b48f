from .drive_client import (
    DriveAPIError,
    DriveAuthError,
    DriveClient,
    DriveNotFoundError,
    close_drive_client,
    get_drive_client,
    is_retryable,
)

__all__ = [
    "DriveAPIError",
    "DriveAuthError",
    "DriveClient",
    "DriveNotFoundError",
    "close_drive_client",
    "get_drive_client",
    "is_retryable",
]
