"""
Tree Chronicle Backend — Backup Route Handlers
================================================

What:  GET /api/backup/export downloads a full backup archive;
       POST /api/backup/import replaces all data with an uploaded one.
Why:   Lets a user move their journal between machines or roll back to an
       earlier snapshot.
How:   Thin handlers; BackupService owns the protocol.
Who:   Called by the frontend Settings → Backup panel.

Import is a hard reset: after a successful response the client must discard
every cached project and photo and reload.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import FileResponse
from starlette.datastructures import UploadFile

from tree_chronicle.exceptions import MissingArchiveError
from tree_chronicle.schemas.backup import ErrorResponse, ImportResponse
from tree_chronicle.services.backup_service import backup_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/backup", tags=["Backup"])

ARCHIVE_FIELD = "backup"


@router.get(
    "/export",
    response_class=FileResponse,
    responses={
        200: {"description": "ZIP archive of the database and upload directory",
              "content": {"application/zip": {}}},
        500: {"description": "Archive could not be built", "model": ErrorResponse},
        503: {"description": "An import is in progress", "model": ErrorResponse},
    },
    summary="Download a full backup archive",
)
async def export_backup(background_tasks: BackgroundTasks) -> FileResponse:
    """
    Stream a freshly built archive as an attachment.

    The archive is fully written before the first byte is sent, so a failure
    is a clean JSON 500 rather than a truncated download. The temp file is
    deleted once the response has been sent.

    Headers:
        X-Backup-Files:         number of upload files in the archive
        X-Backup-Missing-Files: photo rows whose file was not found (if any)
    """
    result = await backup_service.export_archive()
    background_tasks.add_task(backup_service.discard_export, result.path)

    headers = {
        "X-Backup-Files": str(result.file_count),
        "Cache-Control": "no-store",
    }
    if result.missing_files:
        headers["X-Backup-Missing-Files"] = str(len(result.missing_files))

    return FileResponse(
        path=str(result.path),
        media_type="application/zip",
        filename=result.filename,
        headers=headers,
        background=background_tasks,
    )


@router.post(
    "/import",
    response_model=ImportResponse,
    responses={
        200: {"description": "Backup restored", "model": ImportResponse},
        400: {"description": "Missing or invalid archive", "model": ErrorResponse},
        500: {"description": "Import failed (see details.stage)", "model": ErrorResponse},
        503: {"description": "Store busy or another import running", "model": ErrorResponse},
    },
    summary="Replace all data with a backup archive",
    description=(
        "Upload a backup archive as multipart field 'backup'. The archive is "
        "validated before anything is changed; on success the database and "
        "upload directory are replaced as a unit."
    ),
)
async def import_backup(request: Request) -> ImportResponse:
    # Parsed by hand so a missing field is our 400, not FastAPI's 422
    form = await request.form()
    try:
        uploads = [
            item for item in form.getlist(ARCHIVE_FIELD)
            if isinstance(item, UploadFile) and item.filename
        ]
        if len(uploads) != 1:
            raise MissingArchiveError(
                message="Attach exactly one backup archive in the 'backup' field."
                if uploads else "No backup archive was attached to the request."
            )

        archive_path = await backup_service.save_upload(uploads[0])
    finally:
        await form.close()

    logger.info("Backup import requested (%s)", uploads[0].filename)
    return await backup_service.import_archive(archive_path)
