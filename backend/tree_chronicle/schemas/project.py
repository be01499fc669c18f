"""
Tree Chronicle Backend — Project & Photo Schemas
==================================================

What:  Pydantic models defining the CRUD API contract for projects and photos.
Why:   Strict input validation, automatic serialization, and OpenAPI docs.

Design Decision:
    Schemas are separate from SQLAlchemy models so the API controls exactly
    which fields are exposed (e.g. image_url is computed, never stored).
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255, description="Project name")
    description: Optional[str] = Field(default="", description="Optional free-text description")


class ProjectUpdate(BaseModel):
    """
    Partial update: only fields present in the request body are written.

    Why exclude_unset (in the service): `summary: null` must clear the
    summary, while an omitted `summary` must leave it alone.
    """
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    summary: Optional[str] = None
    status: Optional[Literal["active", "archived"]] = None


class PhotoUpdate(BaseModel):
    caption: Optional[str] = Field(default="", description="New caption (empty clears it)")


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class ProjectResponse(BaseModel):
    """
    What:  A project as shown on the projects overview.
    Why latest_photo: The overview card uses the newest photo as its cover.
    """
    id: int
    name: str
    description: Optional[str] = None
    summary: Optional[str] = None
    status: str
    created_at: datetime
    latest_photo: Optional[str] = Field(
        default=None,
        description="Filename of the project's most recent photo (by original_date)",
    )

    model_config = {"from_attributes": True}


class PhotoResponse(BaseModel):
    id: int
    project_id: int
    filename: str
    original_date: str
    caption: Optional[str] = ""
    created_at: datetime
    image_url: str = Field(description="URL path serving the image bytes")

    model_config = {"from_attributes": True}


class SuccessResponse(BaseModel):
    success: bool = True
