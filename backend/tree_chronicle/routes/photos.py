"""
Tree Chronicle Backend — Photo Route Handlers
===============================================

What:  Upload, list, re-caption and delete photos, plus serving image bytes
       from the upload directory.
Who:   Called by the frontend timeline and capture flow; /uploads/{filename}
       backs every <img> tag.

Request Flow (upload):
    1. Client sends multipart/form-data: image, project_id, original_date?, caption?
    2. Image bytes are read into memory (bounded by size validation)
    3. ProjectService validates → stores the file → inserts the row
    4. 201 Created with the photo, including its image_url
"""

import logging
from typing import AsyncIterator, List, Optional

import aiofiles

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from tree_chronicle.database import get_db_session, store
from tree_chronicle.schemas.backup import ErrorResponse
from tree_chronicle.schemas.project import PhotoResponse, PhotoUpdate, SuccessResponse
from tree_chronicle.services.file_service import MEDIA_TYPES, file_service
from tree_chronicle.services.project_service import project_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Photos"])

STREAM_CHUNK_SIZE = 64 * 1024


@router.get(
    "/api/photos",
    response_model=List[PhotoResponse],
    responses={503: {"description": "Store unavailable", "model": ErrorResponse}},
    summary="List photos, newest original date first",
)
async def list_photos(
    project_id: Optional[int] = Query(default=None, description="Only photos of this project"),
    db: AsyncSession = Depends(get_db_session),
) -> List[PhotoResponse]:
    return await project_service.list_photos(db, project_id=project_id)


@router.post(
    "/api/photos",
    status_code=201,
    response_model=PhotoResponse,
    responses={
        400: {"description": "Invalid image type or size", "model": ErrorResponse},
        404: {"description": "Project not found", "model": ErrorResponse},
        503: {"description": "Store unavailable", "model": ErrorResponse},
    },
    summary="Upload a photo into a project",
)
async def upload_photo(
    image: UploadFile = File(..., description="JPEG, PNG, WebP or GIF image"),
    project_id: int = Form(...),
    original_date: Optional[str] = Form(
        default=None,
        description="When the photo was taken (ISO 8601). Defaults to now.",
    ),
    caption: Optional[str] = Form(default=None),
    db: AsyncSession = Depends(get_db_session),
) -> PhotoResponse:
    content = await image.read()
    return await project_service.add_photo(
        db,
        project_id=project_id,
        filename=image.filename or "",
        content=content,
        original_date=original_date,
        caption=caption,
    )


@router.patch(
    "/api/photos/{photo_id}",
    response_model=PhotoResponse,
    responses={
        404: {"description": "Photo not found", "model": ErrorResponse},
        503: {"description": "Store unavailable", "model": ErrorResponse},
    },
    summary="Change a photo's caption",
)
async def update_photo(
    photo_id: int,
    data: PhotoUpdate,
    db: AsyncSession = Depends(get_db_session),
) -> PhotoResponse:
    return await project_service.update_caption(db, photo_id, data.caption)


@router.delete(
    "/api/photos/{photo_id}",
    response_model=SuccessResponse,
    responses={
        404: {"description": "Photo not found", "model": ErrorResponse},
        503: {"description": "Store unavailable", "model": ErrorResponse},
    },
    summary="Delete a photo and its image file",
)
async def delete_photo(
    photo_id: int,
    db: AsyncSession = Depends(get_db_session),
) -> SuccessResponse:
    await project_service.delete_photo(db, photo_id)
    return SuccessResponse()


@router.get(
    "/uploads/{filename}",
    summary="Serve a stored image",
    responses={
        200: {"description": "Image file"},
        404: {"description": "File not found", "model": ErrorResponse},
        503: {"description": "Store unavailable", "model": ErrorResponse},
    },
)
async def serve_upload(filename: str) -> StreamingResponse:
    """
    Serve image bytes from the upload directory.

    The file is opened while a gate token is held, so the bytes streamed
    afterwards come from that open file even if an import moves the upload
    directory aside mid-download.

    Security:
        file_service.resolve() confines the path to the upload directory.
    """
    async with store.acquire():
        path = file_service.resolve(filename)
        size = path.stat().st_size
        image = await aiofiles.open(path, "rb")

    return StreamingResponse(
        _stream_file(image),
        media_type=MEDIA_TYPES.get(path.suffix.lower(), "application/octet-stream"),
        headers={
            "Content-Length": str(size),
            # Names are never reused, so the bytes behind a URL never change
            "Cache-Control": "public, max-age=86400",
        },
    )


async def _stream_file(image) -> AsyncIterator[bytes]:
    try:
        while True:
            chunk = await image.read(STREAM_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        await image.close()
