"""
Tree Chronicle Backend — Custom Exception Hierarchy
=====================================================

What:  Defines application-specific exceptions for different error scenarios.
Why:   Custom exceptions enable targeted error handling with appropriate HTTP
       status codes and user-friendly messages, without leaking file paths,
       SQL or OS error text to the client.
How:   Each exception class carries a message, a stable error code and an
       optional context dict. Global exception handlers (registered in main.py)
       catch these and return structured JSON error responses.
Who:   Raised by services, the store handle and routes; caught by global handlers.

Exception Hierarchy:
    TreeChronicleError (base)
    ├── ValidationError            → 400 Bad Request (client can fix)
    │   ├── MissingArchiveError    → 400 (no backup file attached)
    │   └── InvalidArchiveError    → 400 (not a usable backup archive)
    ├── NotFoundError              → 404 Not Found
    ├── StoreUnavailableError      → 503 Service Unavailable (retry later)
    ├── FileStorageError           → 500 Internal Server Error
    ├── DatabaseError              → 500 Internal Server Error
    ├── BackupExportError          → 500 Internal Server Error
    └── ImportFailedError          → 500 Internal Server Error (stage-specific)
"""

from typing import Any, Dict, Optional


class TreeChronicleError(Exception):
    """
    Base exception for all Tree Chronicle application errors.

    Attributes:
        message:    User-facing error description (safe to return in API response)
        context:    Additional debug info (logged but NOT returned to client
                    unless the handler explicitly whitelists it)
        error_code: Stable machine-readable code used in the response body
    """

    error_code = "server_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(TreeChronicleError):
    """
    Raised when client input fails validation.

    When:    Unsupported file type, size exceeded, missing fields, bad archive.
    HTTP:    400 Bad Request

    Example response:
        {
            "error": "validation_error",
            "message": "File type '.bmp' is not supported. Allowed types: .gif, .jpeg, ...",
            "details": {"field": "image"}
        }
    """

    error_code = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class MissingArchiveError(ValidationError):
    """
    Raised when an import request carries no archive (or more than one).

    No side effects have happened when this is raised; the client can retry.
    """

    error_code = "missing_archive"

    def __init__(self, message: str = "No backup archive was attached to the request."):
        super().__init__(message=message, field="backup")


class InvalidArchiveError(ValidationError):
    """
    Raised when the uploaded file is not a usable backup archive.

    When:    Not a ZIP, corrupt CRCs, no database entry, database entry that is
             not SQLite, or entries that would escape the upload directory.
    Why before quiescing: Validation runs before the store is closed, so a bad
             upload never interrupts service.
    """

    error_code = "invalid_archive"

    def __init__(
        self,
        message: str = "The uploaded file is not a valid backup archive.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, field="backup", context=context)


class NotFoundError(TreeChronicleError):
    """
    Raised when a requested resource does not exist.

    HTTP:    404 Not Found
    """

    error_code = "not_found"

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class StoreUnavailableError(TreeChronicleError):
    """
    Raised when a request needs the store while it is closed for replacement.

    When:    An import has quiesced the store, or the store is reopening.
    HTTP:    503 Service Unavailable with Retry-After

    The request had no side effects; clients should retry after the hint.
    """

    error_code = "store_unavailable"

    def __init__(
        self,
        message: str = "The photo store is temporarily unavailable while a backup is restored. Please retry shortly.",
        retry_after: int = 5,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class FileStorageError(TreeChronicleError):
    """
    Raised when file system operations on photo uploads fail.

    When:    Disk full, permission denied, directory not writable, I/O error.
    HTTP:    500 Internal Server Error
    """

    def __init__(
        self,
        message: str = "File storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(TreeChronicleError):
    """
    Raised when database operations fail unexpectedly.

    HTTP:    500 Internal Server Error

    Security Note:
        The message returned to the client is always generic. SQL text and
        constraint names are logged server-side only.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class BackupExportError(TreeChronicleError):
    """
    Raised when the backup archive cannot be assembled.

    When:    Database file or upload directory missing/unreadable, disk full
             while writing the temporary archive.
    HTTP:    500 Internal Server Error

    Raised before any response byte is sent, so the client never receives a
    truncated archive.
    """

    error_code = "backup_export_failed"

    def __init__(
        self,
        message: str = "The backup archive could not be created. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ImportFailedError(TreeChronicleError):
    """
    Raised when an import fails after the archive was accepted.

    Attributes:
        stage:            Which import stage failed (quiesce, stage, swap, reopen)
        state_consistent: True when the store and upload directory are known to
                          match each other (untouched or rolled back)
        rolled_back:      True when the pre-import snapshot was restored
    HTTP:    500 Internal Server Error

    An inconsistent result is the one failure the operator must act on
    (restore from a previous export), so it is logged at CRITICAL and the
    message says so explicitly.
    """

    error_code = "import_failed"

    def __init__(
        self,
        stage: str,
        state_consistent: bool = True,
        rolled_back: bool = False,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        if message is None:
            if state_consistent:
                message = (
                    f"Import failed during the '{stage}' stage. "
                    "Your existing photos and projects were kept."
                )
            else:
                message = (
                    f"Import failed during the '{stage}' stage and the system state may be "
                    "inconsistent. Restore from a previous backup export."
                )
        ctx = context or {}
        ctx.update({"stage": stage, "state_consistent": state_consistent, "rolled_back": rolled_back})
        super().__init__(message=message, context=ctx)
        self.stage = stage
        self.state_consistent = state_consistent
        self.rolled_back = rolled_back
