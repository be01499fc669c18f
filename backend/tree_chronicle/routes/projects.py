"""
Tree Chronicle Backend — Project Route Handlers
=================================================

What:  List, create, update and delete projects.
Who:   Called by the frontend project picker and project settings.

Every handler depends on get_db_session, so each one holds a store gate
token and answers 503 while a backup import has the store closed.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tree_chronicle.database import get_db_session
from tree_chronicle.schemas.backup import ErrorResponse
from tree_chronicle.schemas.project import (
    ProjectCreate,
    ProjectResponse,
    ProjectUpdate,
    SuccessResponse,
)
from tree_chronicle.services.project_service import project_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Projects"])


@router.get(
    "/projects",
    response_model=List[ProjectResponse],
    responses={503: {"description": "Store unavailable", "model": ErrorResponse}},
    summary="List projects with their latest photo",
)
async def list_projects(db: AsyncSession = Depends(get_db_session)) -> List[ProjectResponse]:
    return await project_service.list_projects(db)


@router.post(
    "/projects",
    status_code=201,
    response_model=ProjectResponse,
    responses={
        400: {"description": "Invalid project data", "model": ErrorResponse},
        503: {"description": "Store unavailable", "model": ErrorResponse},
    },
    summary="Create a project",
)
async def create_project(
    data: ProjectCreate,
    db: AsyncSession = Depends(get_db_session),
) -> ProjectResponse:
    return await project_service.create_project(db, data)


@router.patch(
    "/projects/{project_id}",
    response_model=ProjectResponse,
    responses={
        404: {"description": "Project not found", "model": ErrorResponse},
        503: {"description": "Store unavailable", "model": ErrorResponse},
    },
    summary="Update a project's name, description, summary or status",
)
async def update_project(
    project_id: int,
    data: ProjectUpdate,
    db: AsyncSession = Depends(get_db_session),
) -> ProjectResponse:
    return await project_service.update_project(db, project_id, data)


@router.delete(
    "/projects/{project_id}",
    response_model=SuccessResponse,
    responses={
        404: {"description": "Project not found", "model": ErrorResponse},
        503: {"description": "Store unavailable", "model": ErrorResponse},
    },
    summary="Delete a project with all its photos",
)
async def delete_project(
    project_id: int,
    db: AsyncSession = Depends(get_db_session),
) -> SuccessResponse:
    """
    Removes the project, its photo rows (cascade) and their image files.
    Files belonging to other projects are never touched.
    """
    await project_service.delete_project(db, project_id)
    return SuccessResponse()
