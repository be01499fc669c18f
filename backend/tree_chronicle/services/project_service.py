"""
Tree Chronicle Backend — Project & Photo Service
==================================================

What:  CRUD business logic for projects and photos.
Why:   Keeps routes thin; these are the store-touching operations the backup
       gate protects.
Who:   Called by the projects/photos route handlers with a gated session.

Error Handling Strategy:
    Missing rows become NotFoundError (404). Unexpected SQLAlchemy errors are
    wrapped in DatabaseError (500) with details logged server-side only.
    Our own exceptions propagate unchanged.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tree_chronicle.exceptions import DatabaseError, NotFoundError
from tree_chronicle.models.photo import Photo
from tree_chronicle.models.project import Project
from tree_chronicle.schemas.project import (
    PhotoResponse,
    ProjectCreate,
    ProjectResponse,
    ProjectUpdate,
)
from tree_chronicle.services.file_service import file_service

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_NAME = "My Tree"
DEFAULT_PROJECT_DESCRIPTION = "Recording how the tree out front changes through the seasons"


def _photo_response(photo: Photo) -> PhotoResponse:
    return PhotoResponse(
        id=photo.id,
        project_id=photo.project_id,
        filename=photo.filename,
        original_date=photo.original_date,
        caption=photo.caption,
        created_at=photo.created_at,
        image_url=f"/uploads/{photo.filename}",
    )


async def seed_default_project(db: AsyncSession) -> None:
    """Create-hook for a brand-new store: give the UI one project to start with."""
    db.add(Project(name=DEFAULT_PROJECT_NAME, description=DEFAULT_PROJECT_DESCRIPTION))
    logger.info("Seeded default project '%s'", DEFAULT_PROJECT_NAME)


class ProjectService:
    """
    Stateless service; every method receives the request's gated session.

    Responsibilities:
        - Projects: list (with cover photo), create, update, delete
        - Photos: list, upload, update caption, delete
    """

    # ── Projects ──────────────────────────────────────────────────────────

    async def list_projects(self, db: AsyncSession) -> List[ProjectResponse]:
        """
        All projects, newest first, each with the filename of its most
        recent photo (by original_date) as `latest_photo`.
        """
        latest_photo = (
            select(Photo.filename)
            .where(Photo.project_id == Project.id)
            .order_by(Photo.original_date.desc(), Photo.id.desc())
            .limit(1)
            .correlate(Project)
            .scalar_subquery()
        )
        try:
            result = await db.execute(
                select(Project, latest_photo.label("latest_photo"))
                .order_by(Project.created_at.desc(), Project.id.desc())
            )
            rows = result.all()
        except SQLAlchemyError as e:
            logger.error("Database error listing projects: %s", str(e), exc_info=True)
            raise DatabaseError(message="Could not retrieve projects. Please try again.")

        return [
            ProjectResponse(
                id=project.id,
                name=project.name,
                description=project.description,
                summary=project.summary,
                status=project.status,
                created_at=project.created_at,
                latest_photo=latest,
            )
            for project, latest in rows
        ]

    async def create_project(self, db: AsyncSession, data: ProjectCreate) -> ProjectResponse:
        project = Project(name=data.name, description=data.description or "")
        db.add(project)
        await db.flush()
        await db.refresh(project)
        logger.info("Project created: %s (%s)", project.id, project.name)
        return ProjectResponse.model_validate(project)

    async def _get_project(self, db: AsyncSession, project_id: int) -> Project:
        project = await db.get(Project, project_id)
        if project is None:
            raise NotFoundError(resource="project", resource_id=str(project_id))
        return project

    async def update_project(
        self, db: AsyncSession, project_id: int, data: ProjectUpdate
    ) -> ProjectResponse:
        project = await self._get_project(db, project_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            if value is None and field in ("name", "status"):
                continue  # NOT NULL columns; null means "leave as is"
            setattr(project, field, value)
        await db.flush()
        return ProjectResponse.model_validate(project)

    async def delete_project(self, db: AsyncSession, project_id: int) -> None:
        """
        Delete a project, its photo rows (FK cascade) and only its own files.

        Commits before removing files, so a failed commit leaves rows and
        files together.
        """
        project = await self._get_project(db, project_id)
        result = await db.execute(select(Photo.filename).where(Photo.project_id == project_id))
        filenames = list(result.scalars().all())

        await db.delete(project)
        await db.commit()

        for filename in filenames:
            await file_service.cleanup_file(filename)
        logger.info("Project %s deleted with %d photo(s)", project_id, len(filenames))

    # ── Photos ────────────────────────────────────────────────────────────

    async def list_photos(
        self, db: AsyncSession, project_id: Optional[int] = None
    ) -> List[PhotoResponse]:
        query = select(Photo).order_by(Photo.original_date.desc(), Photo.id.desc())
        if project_id is not None:
            query = query.where(Photo.project_id == project_id)
        result = await db.execute(query)
        return [_photo_response(photo) for photo in result.scalars().all()]

    async def add_photo(
        self,
        db: AsyncSession,
        project_id: int,
        filename: str,
        content: bytes,
        original_date: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> PhotoResponse:
        """
        Store the image file, then insert its row.

        Error Recovery:
            File validation fails → ValidationError (400), nothing written
            Row insert fails      → stored file is removed, error propagates
        """
        await self._get_project(db, project_id)
        stored_name = await file_service.validate_and_store(filename, content)

        try:
            photo = Photo(
                project_id=project_id,
                filename=stored_name,
                original_date=original_date or datetime.now(timezone.utc).isoformat(),
                caption=caption or "",
            )
            db.add(photo)
            await db.flush()
            await db.refresh(photo)
        except Exception as e:
            await file_service.cleanup_file(stored_name)
            logger.error("Failed to record photo %s: %s", stored_name, str(e), exc_info=True)
            raise DatabaseError(
                message="The photo could not be saved. Please try again.",
                context={"error_type": type(e).__name__},
            )

        logger.info("Photo %s added to project %s", photo.id, project_id)
        return _photo_response(photo)

    async def update_caption(
        self, db: AsyncSession, photo_id: int, caption: Optional[str]
    ) -> PhotoResponse:
        photo = await db.get(Photo, photo_id)
        if photo is None:
            raise NotFoundError(resource="photo", resource_id=str(photo_id))
        photo.caption = caption or ""
        await db.flush()
        return _photo_response(photo)

    async def delete_photo(self, db: AsyncSession, photo_id: int) -> None:
        photo = await db.get(Photo, photo_id)
        if photo is None:
            raise NotFoundError(resource="photo", resource_id=str(photo_id))
        filename = photo.filename
        await db.execute(delete(Photo).where(Photo.id == photo_id))
        await db.commit()
        await file_service.cleanup_file(filename)


# ── Singleton Instance ────────────────────────────────────────────────────
project_service = ProjectService()
