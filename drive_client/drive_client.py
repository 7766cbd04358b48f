# drive_client/drive_client.py

"""
Google Drive v3 client shared by every request.
- One authlib AsyncOAuth2Client (an httpx.AsyncClient) per process
- Refresh-token grant handled by authlib, token renewed shortly before expiry
- Provider errors mapped to DriveAPIError with a retryable flag
"""

import json
import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager, contextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from authlib.integrations.httpx_client import AsyncOAuth2Client, OAuthError

from config import get_settings

logger = logging.getLogger(__name__)

DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
TOKEN_URL = "https://oauth2.googleapis.com/token"

LIST_FIELDS = "nextPageToken, files(id, name, mimeType, size)"
METADATA_FIELDS = "id, name, mimeType, size"

# Refresh this many seconds before the provider-reported expiry
TOKEN_EXPIRY_MARGIN = 60
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


class DriveAPIError(Exception):
    """Drive API call failed"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason

    @property
    def retryable(self) -> bool:
        """Transport failures, throttling, stale tokens and 5xx are worth another attempt."""
        if self.status_code is None:
            return True
        if self.status_code in (401, 408, 429) or self.status_code >= 500:
            return True
        return self.status_code == 403 and self.reason in RATE_LIMIT_REASONS


class DriveNotFoundError(DriveAPIError):
    """File or folder id does not exist (or is not visible to the credential)"""

    pass


class DriveAuthError(DriveAPIError):
    """Credential missing or rejected by the token endpoint"""

    @property
    def retryable(self) -> bool:
        return False


def is_retryable(error: Exception) -> bool:
    """Retry predicate for RetryPolicy: Drive errors decide, anything else retries."""
    if isinstance(error, DriveAPIError):
        return error.retryable
    return True


class DriveClient:
    """
    Async Google Drive client.

    Read-only after construction apart from the OAuth token, which authlib
    refreshes under its own lock, so one instance is safely shared by
    concurrent archive jobs.
    """

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        refresh_token: Optional[str],
        redirect_uri: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._has_credentials = bool(client_id and client_secret and refresh_token)
        self._client = AsyncOAuth2Client(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
            token_endpoint=TOKEN_URL,
            token_endpoint_auth_method="client_secret_post",
            # No access token yet: expires_at in the past forces a refresh on first use
            token={
                "access_token": "",
                "token_type": "Bearer",
                "refresh_token": refresh_token,
                "expires_at": 1,
            },
            update_token=self._on_token_refreshed,
            leeway=TOKEN_EXPIRY_MARGIN,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            follow_redirects=True,
        )

    # =========================================================================
    # CREDENTIAL
    # =========================================================================

    async def _on_token_refreshed(self, token, refresh_token=None, access_token=None):
        logger.info(f"✓ Drive access token refreshed (expires in {token.get('expires_in', '?')}s)")

    def _require_credentials(self):
        if not self._has_credentials:
            raise DriveAuthError(
                "Drive credentials not configured (CLIENT_ID, CLIENT_SECRET, REFRESH_TOKEN)"
            )

    def _expire_token(self):
        if self._client.token:
            self._client.token["expires_at"] = 1

    # =========================================================================
    # ERROR MAPPING
    # =========================================================================

    @contextmanager
    def _translate_errors(self, context: str):
        try:
            yield
        except OAuthError as e:
            raise DriveAuthError(f"{context}: token refresh failed ({e})") from e
        except httpx.HTTPError as e:
            raise DriveAPIError(f"{context}: {e!r}") from e

    def _error_from_response(self, response: httpx.Response, context: str) -> DriveAPIError:
        message = response.text[:200]
        reason = None
        try:
            error = response.json().get("error", {})
            if isinstance(error, dict):
                message = error.get("message", message)
                errors = error.get("errors") or []
                if errors:
                    reason = errors[0].get("reason")
        except (ValueError, AttributeError):
            pass

        status = response.status_code
        if status == 401:
            logger.debug(f"{context}: access token rejected, refreshing on next call")
            self._expire_token()
        if status == 404:
            return DriveNotFoundError(f"{context}: not found", status_code=status, reason=reason)
        return DriveAPIError(f"{context} ({status}): {message}", status_code=status, reason=reason)

    async def _request(self, method: str, url: str, context: str, **kwargs) -> httpx.Response:
        """Authenticated request; authlib refreshes the token first when it is due."""
        self._require_credentials()
        with self._translate_errors(context):
            response = await self._client.request(method, url, **kwargs)
        if response.status_code >= 400:
            raise self._error_from_response(response, context)
        return response

    # =========================================================================
    # METADATA
    # =========================================================================

    async def list_children(
        self,
        folder_id: str,
        page_token: Optional[str] = None,
        page_size: int = 1000,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        List one page of a folder's non-trashed children.

        Returns:
            (files, next_page_token); next_page_token is None on the last page
        """
        params = {
            "q": f"'{folder_id}' in parents and trashed = false",
            "fields": LIST_FIELDS,
            "pageSize": page_size,
            "supportsAllDrives": "true",
            "includeItemsFromAllDrives": "true",
        }
        if page_token:
            params["pageToken"] = page_token

        response = await self._request(
            "GET", f"{DRIVE_API_BASE}/files", f"List folder {folder_id}", params=params
        )
        payload = response.json()
        return payload.get("files", []), payload.get("nextPageToken")

    async def get_metadata(self, file_id: str) -> Dict[str, Any]:
        """Fetch id, name, mimeType and size for one file."""
        response = await self._request(
            "GET",
            f"{DRIVE_API_BASE}/files/{file_id}",
            f"Get metadata {file_id}",
            params={"fields": METADATA_FIELDS, "supportsAllDrives": "true"},
        )
        return response.json()

    # =========================================================================
    # CONTENT
    # =========================================================================

    @asynccontextmanager
    async def open_content(
        self, file_id: str, chunk_size: int = 64 * 1024
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """
        Open a file's content as an async byte-chunk iterator.

        Usage:
            async with client.open_content(file_id) as chunks:
                async for chunk in chunks:
                    ...
        """
        context = f"Download {file_id}"
        self._require_credentials()
        async with AsyncExitStack() as stack:
            with self._translate_errors(context):
                response = await stack.enter_async_context(
                    self._client.stream(
                        "GET",
                        f"{DRIVE_API_BASE}/files/{file_id}",
                        params={"alt": "media", "supportsAllDrives": "true"},
                    )
                )
            if response.status_code >= 400:
                await response.aread()
                raise self._error_from_response(response, context)
            yield self._iter_bytes(response, file_id, chunk_size)

    @staticmethod
    async def _iter_bytes(
        response: httpx.Response, file_id: str, chunk_size: int
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes(chunk_size):
                yield chunk
        except httpx.HTTPError as e:
            raise DriveAPIError(f"Download {file_id} interrupted: {e!r}") from e

    # =========================================================================
    # PASSTHROUGH WRITES
    # =========================================================================

    async def upload_file(
        self,
        name: str,
        content: bytes,
        mime_type: Optional[str] = None,
        parent_folder_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a file with a multipart/related upload.

        Returns:
            Dict with the new file's id and name
        """
        boundary = uuid.uuid4().hex
        metadata = {"name": name, "parents": [parent_folder_id or "root"]}
        body = (
            f"--{boundary}\r\n"
            "Content-Type: application/json; charset=UTF-8\r\n\r\n"
            f"{json.dumps(metadata)}\r\n"
            f"--{boundary}\r\n"
            f"Content-Type: {mime_type or 'application/octet-stream'}\r\n\r\n"
        ).encode() + content + f"\r\n--{boundary}--\r\n".encode()

        response = await self._request(
            "POST",
            DRIVE_UPLOAD_URL,
            f"Upload {name}",
            params={"uploadType": "multipart", "fields": "id, name", "supportsAllDrives": "true"},
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            content=body,
        )
        return response.json()

    async def rename_file(self, file_id: str, new_name: str) -> Dict[str, Any]:
        """Rename a file; returns the updated resource."""
        response = await self._request(
            "PATCH",
            f"{DRIVE_API_BASE}/files/{file_id}",
            f"Rename {file_id}",
            params={"fields": "id, name, mimeType", "supportsAllDrives": "true"},
            json={"name": new_name},
        )
        return response.json()

    async def aclose(self):
        await self._client.aclose()


# Global instance
_drive_client: Optional[DriveClient] = None


def get_drive_client() -> DriveClient:
    """
    Get or create the process-wide Drive client.

    Returns:
        DriveClient built from settings on first use
    """
    global _drive_client
    if _drive_client is None:
        settings = get_settings()
        if not settings.has_drive_credentials:
            logger.warning("⚠️ Drive credentials missing - Drive calls will fail")
        _drive_client = DriveClient(
            client_id=settings.CLIENT_ID,
            client_secret=settings.CLIENT_SECRET,
            refresh_token=settings.REFRESH_TOKEN,
            redirect_uri=settings.REDIRECT_URI,
            timeout=settings.DRIVE_API_TIMEOUT,
        )
        logger.info("✅ Drive client initialized")
    return _drive_client


async def close_drive_client():
    """Close the process-wide Drive client"""
    global _drive_client
    if _drive_client is not None:
        await _drive_client.aclose()
        _drive_client = None
        logger.info("Drive client closed")
