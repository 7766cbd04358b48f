"""
Drive ZIP Download API
======================

Endpoints:
- GET /download-zip        - ZIP of a folder (recursive) or of selected files
- GET /download-info       - Size estimate and batch recommendation
- GET /download-multi-zip  - Split a large folder into several archives
- GET /download-zip-part   - One part of a split folder download

Errors are JSON ``{"error": ...}`` as long as no archive bytes were sent; once
the archive stream has started, a failure can only abort the connection.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from services.errors import ArchiveJobError
from services.models import ListingRequest
from services.zip_download_service import ZipDownloadService, get_zip_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["downloads"])


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def stream_archive(
    service: ZipDownloadService,
    listing_request: ListingRequest,
    profile_name: str,
    filename: str = "folder.zip",
    part: Optional[tuple] = None,
):
    """Run one archive job and return its streaming response (or a JSON error)."""
    try:
        profile = service.settings.profile(profile_name)
    except ValueError as e:
        return error_response(400, str(e))

    try:
        download = await service.open_archive(
            listing_request, profile, filename=filename, part=part
        )
    except ArchiveJobError as e:
        return error_response(e.status_code, e.message)
    except Exception:
        # Already logged with traceback by the service
        return error_response(500, "Internal error while creating the ZIP download")

    return download.response()


# =============================================================================
# ARCHIVE DOWNLOADS
# =============================================================================


@router.get(
    "/download-zip",
    summary="Download folder or files as ZIP",
    description=(
        "Streams a ZIP of every file below `folderId` (recursive, paths kept). "
        "`folderId` is required; when the comma separated `fileIds` is given, "
        "only those files are archived. Files that cannot be fetched are skipped."
    ),
)
async def download_zip(
    folder_id: Optional[str] = Query(None, alias="folderId"),
    file_ids: Optional[str] = Query(None, alias="fileIds"),
    profile: str = Query("standard", description="Pipeline profile: standard | large"),
    service: ZipDownloadService = Depends(get_zip_service),
):
    if not folder_id:
        return error_response(400, "folderId is required")

    listing_request = ListingRequest.from_query(folder_id, file_ids)
    return await stream_archive(service, listing_request, profile)


@router.get("/download-zip-part", name="download_zip_part", summary="Download one ZIP part")
async def download_zip_part(
    folder_id: Optional[str] = Query(None, alias="folderId"),
    part: int = Query(..., description="1-based part number"),
    total: int = Query(..., description="Total number of parts"),
    profile: str = Query("standard"),
    service: ZipDownloadService = Depends(get_zip_service),
):
    if not folder_id:
        return error_response(400, "folderId is required")
    if total < 1 or not 1 <= part <= total:
        return error_response(400, f"part must be between 1 and {max(total, 1)}")

    return await stream_archive(
        service,
        ListingRequest(root_folder_id=folder_id),
        profile,
        filename=f"folder-part-{part}-of-{total}.zip",
        part=(part, total),
    )


# =============================================================================
# PLANNING
# =============================================================================


@router.get("/download-info", summary="Estimate a folder download")
async def download_info(
    folder_id: Optional[str] = Query(None, alias="folderId"),
    service: ZipDownloadService = Depends(get_zip_service),
):
    """
    Returns totalFiles, totalSize (extrapolated from a sample),
    recommendedBatchSize, estimatedBatches and sampledFiles.
    """
    if not folder_id:
        return error_response(400, "folderId is required")

    try:
        return await service.describe_folder(folder_id)
    except ArchiveJobError as e:
        logger.warning(f"Download info for {folder_id} failed: {e}")
        return error_response(e.status_code, e.message)
    except Exception as e:
        logger.error(f"Download info error: {e}", exc_info=True)
        return error_response(500, "Failed to load folder information")


@router.get("/download-multi-zip", summary="Plan a multi-part folder download")
async def download_multi_zip(
    request: Request,
    folder_id: Optional[str] = Query(None, alias="folderId"),
    service: ZipDownloadService = Depends(get_zip_service),
):
    if not folder_id:
        return error_response(400, "folderId is required")

    try:
        plan = await service.plan_parts(folder_id)
    except ArchiveJobError as e:
        logger.warning(f"Multi-ZIP plan for {folder_id} failed: {e}")
        return error_response(e.status_code, e.message)
    except Exception as e:
        logger.error(f"Multi-ZIP plan error: {e}", exc_info=True)
        return error_response(500, "Failed to plan the multi-part download")

    total_parts = plan["totalParts"]
    plan["downloadUrls"] = [
        str(
            request.url_for("download_zip_part").include_query_params(
                folderId=folder_id, part=part, total=total_parts
            )
        )
        for part in range(1, total_parts + 1)
    ]
    logger.info(f"Multi-ZIP plan for {folder_id}: {plan['totalFiles']} files in {total_parts} part(s)")
    return plan
