"""
Tree Chronicle Backend — Backup, Error & Health Schemas
=========================================================

What:  Response contracts for the backup endpoints plus the shared error and
       health payloads.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ImportResponse(BaseModel):
    """
    What:  Acknowledgment returned after a successful import.
    Who:   Returned by POST /api/backup/import.

    Import is a hard reset: the client must discard every cached project and
    photo and reload from scratch. The counts describe the restored snapshot.
    """
    success: bool = True
    message: str = Field(default="Backup restored. Reload to see the restored data.")
    projects: int = Field(description="Projects in the restored store")
    photos: int = Field(description="Photos in the restored store")
    files: int = Field(description="Files written to the upload directory")


class ErrorResponse(BaseModel):
    """
    What:  Standardized error response format for all API errors.

    Example:
        {
            "error": "import_failed",
            "message": "Import failed during the 'swap' stage. Your existing photos and projects were kept.",
            "details": {"stage": "swap", "state_consistent": true, "rolled_back": true},
            "request_id": "3f2a9c1b"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    store: str = Field(description="Store handle state: open, closed, reopening")
    database: str = Field(description="Database connectivity: connected, disconnected, unavailable")
    uptime_seconds: float = Field(description="Seconds since service started")
