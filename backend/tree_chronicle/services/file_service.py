"""
Tree Chronicle Backend — Photo File Storage Service
=====================================================

What:  Validates, names, stores, serves and deletes photo payloads in the
       upload directory.
Why:   Centralizes all upload-directory writes so every file on disk has a
       system-generated name (archives reuse these names verbatim).
Who:   Called by ProjectService during photo upload/delete and by the
       /uploads route for serving.

Filename scheme:
    <epoch-millis>-<random 0..999999999><ext>     e.g. 1718000000123-482911374.jpg

    - Timestamp prefix keeps names roughly chronological in a directory listing
    - Random suffix makes collisions between uploads in the same millisecond
      vanishingly unlikely
    - Extension comes from the client filename but only after it matched the
      allow-list, so no client-supplied path component ever reaches the disk
"""

import logging
import os
import secrets
import time
from pathlib import Path
from typing import Optional

import aiofiles

from tree_chronicle.config import settings
from tree_chronicle.exceptions import FileStorageError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# What: Image extensions accepted from the capture flow and manual uploads
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif"}

MEDIA_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


def generate_filename(original_filename: str) -> str:
    """
    Build a collision-resistant upload filename from a validated extension.

    The extension is lower-cased; everything else about the client's filename
    is discarded.
    """
    ext = Path(original_filename).suffix.lower()
    return f"{int(time.time() * 1000)}-{secrets.randbelow(1_000_000_000)}{ext}"


class FileService:
    """
    Manages the lifecycle of photo files in the upload directory.

    Lifecycle of an uploaded photo:
        1. validate_extension() : allow-listed image types only
        2. validate_size()      : non-empty, below settings.max_file_size
        3. store_file()         : generated name, async write
        4. cleanup_file()       : on photo delete or failed DB insert
    """

    def __init__(self, storage_root: Optional[str] = None):
        """
        Args:
            storage_root: Override the upload directory (used in tests).
                          If None, uses settings.uploads_path.
        """
        self.storage_root = Path(storage_root or settings.uploads_path).resolve()

    def validate_extension(self, filename: str) -> str:
        """
        Returns:  Normalized extension (lowercase with dot).
        Raises:   ValidationError if the extension is not allowed.
        """
        ext = Path(filename).suffix.lower()
        if ext not in ALLOWED_EXTENSIONS:
            raise ValidationError(
                message=(
                    f"File type '{ext}' is not supported. "
                    f"Allowed types: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
                ),
                field="image",
                context={"extension": ext},
            )
        return ext

    def validate_size(self, actual_size: int) -> None:
        if actual_size == 0:
            raise ValidationError(message="The uploaded image is empty.", field="image")

        if actual_size > settings.max_file_size:
            max_mb = settings.max_file_size / (1024 * 1024)
            raise ValidationError(
                message=f"Image size ({actual_size / (1024 * 1024):.1f}MB) exceeds maximum of {max_mb:.0f}MB.",
                field="image",
                context={"max_size_mb": max_mb, "actual_size": actual_size},
            )

    async def store_file(self, content: bytes, original_filename: str) -> str:
        """
        Write validated image bytes under a generated name.

        Returns:  The generated filename (relative to the upload directory).
        Raises:   FileStorageError if directory creation or the write fails.
        """
        filename = generate_filename(original_filename)
        path = self.storage_root / filename

        try:
            self.storage_root.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(content)
        except OSError as e:
            logger.error("Failed to store photo %s: %s", filename, str(e))
            raise FileStorageError(
                message="Failed to save the uploaded image. Please try again.",
                context={"path": str(path), "os_error": str(e)},
            )

        logger.info("Photo stored: %s (%d bytes)", filename, len(content))
        return filename

    async def validate_and_store(self, filename: str, content: bytes) -> str:
        """Validate extension and size, then store. Returns the generated filename."""
        self.validate_extension(filename)
        self.validate_size(len(content))
        return await self.store_file(content, filename)

    def resolve(self, filename: str) -> Path:
        """
        Map a stored filename to its path, confined to the upload directory.

        Raises:
            ValidationError: The name would escape the upload directory.
            NotFoundError:   No such file.
        """
        path = (self.storage_root / filename).resolve()
        if not path.is_relative_to(self.storage_root):
            raise ValidationError(message="Invalid file path", field="filename")
        if not path.is_file():
            raise NotFoundError(resource="file", resource_id=filename)
        return path

    async def cleanup_file(self, filename: str) -> None:
        """
        Remove a photo file if it exists.

        Best-effort: a file that cannot be deleted is logged, not raised, so a
        photo row can always be deleted. Export later reports rows whose file
        went missing; files with no row are simply carried along.
        """
        path = self.storage_root / filename
        try:
            if path.exists():
                os.remove(path)
                logger.info("Removed photo file: %s", filename)
            else:
                logger.debug("Cleanup: file already gone: %s", filename)
        except OSError as e:
            logger.warning("Failed to remove photo file %s: %s", filename, str(e))


# ── Singleton Instance ────────────────────────────────────────────────────
file_service = FileService()
