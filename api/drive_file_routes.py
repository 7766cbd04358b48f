"""
Drive File Routes
=================

Thin passthroughs to the Drive API:
- POST /upload-file  - multipart upload (name, parentFolderId, file)
- POST /rename-file  - rename by id
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from drive_client import DriveAPIError, DriveClient, get_drive_client

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================


class RenameRequest(BaseModel):
    fileId: Optional[str] = None
    newName: Optional[str] = None


class UploadResult(BaseModel):
    success: bool
    fileId: str
    fileName: str


def failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


# ============================================================================
# ROUTES
# ============================================================================


@router.post("/upload-file", response_model=UploadResult)
async def upload_file(
    name: Optional[str] = Form(None),
    parentFolderId: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    drive: DriveClient = Depends(get_drive_client),
):
    """
    Upload a file into a Drive folder.

    Returns:
        {success, fileId, fileName}; 400 when file or name is missing
    """
    if file is None or not name:
        return failure(400, "File or name missing")

    try:
        content = await file.read()
        logger.info(f"Uploading '{name}' ({len(content)} bytes) to {parentFolderId or 'root'}")
        created = await drive.upload_file(
            name=name,
            content=content,
            mime_type=file.content_type,
            parent_folder_id=parentFolderId,
        )
        logger.info(f"✓ Uploaded '{name}' as {created['id']}")
        return UploadResult(success=True, fileId=created["id"], fileName=created["name"])

    except DriveAPIError as e:
        logger.error(f"❌ Upload of '{name}' failed: {e}")
        return failure(500, "Upload failed")
    except Exception as e:
        logger.error(f"❌ Upload of '{name}' error: {e}", exc_info=True)
        return failure(500, "Upload failed")
    finally:
        await file.close()


@router.post("/rename-file")
async def rename_file(
    request: RenameRequest,
    drive: DriveClient = Depends(get_drive_client),
):
    """Rename a Drive file. Returns {success, file} with the updated resource."""
    if not request.fileId or not request.newName:
        return failure(400, "fileId and newName are required")

    try:
        updated = await drive.rename_file(request.fileId, request.newName)
    except DriveAPIError as e:
        logger.error(f"❌ Rename of {request.fileId} failed: {e}")
        return failure(500, "Rename failed")
    except Exception as e:
        logger.error(f"❌ Rename of {request.fileId} error: {e}", exc_info=True)
        return failure(500, "Rename failed")

    logger.info(f"✓ Renamed {request.fileId} to '{request.newName}'")
    return {"success": True, "file": updated}
