"""Project endpoints."""

import uuid

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.api.deps import get_current_user, get_db, get_member_project
from taskflow.models.project import Project
from taskflow.models.user import User
from taskflow.schema.project import (
    ProjectCreate,
    ProjectMemberCreate,
    ProjectMemberRead,
    ProjectRead,
    ProjectUpdate,
)
from taskflow.services import project_service

router = APIRouter()


@router.get("", response_model=list[ProjectRead])
async def list_projects(
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[Project]:
    """List projects the current user belongs to."""
    return await project_service.list_projects(session, current_user.id)


@router.post("", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
async def create_project(
    payload: ProjectCreate,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Project:
    return await project_service.create_project(session, current_user.id, payload)


@router.get("/{project_id}", response_model=ProjectRead)
async def get_project(project: Project = Depends(get_member_project)) -> Project:
    return project


@router.patch("/{project_id}", response_model=ProjectRead)
async def update_project(
    project_id: uuid.UUID,
    payload: ProjectUpdate,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Project:
    project = await project_service.get_project_for_owner(session, project_id, current_user.id)
    return await project_service.update_project(session, project, payload)


@router.delete(
    "/{project_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    response_model=None,
)
async def delete_project(
    project_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> None:
    project = await project_service.get_project_for_owner(session, project_id, current_user.id)
    await project_service.delete_project(session, project)


@router.post("/{project_id}/members", response_model=ProjectMemberRead, status_code=status.HTTP_201_CREATED)
async def add_member(
    project_id: uuid.UUID,
    payload: ProjectMemberCreate,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Grant another user access to the project."""
    project = await project_service.get_project_for_owner(session, project_id, current_user.id)
    return await project_service.add_member(session, project, payload)
