"""Project CRUD and membership checks."""

from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.models.project import Project, ProjectMember
from taskflow.models.user import User
from taskflow.schema.project import ProjectCreate, ProjectMemberCreate, ProjectUpdate
from taskflow.utils.slugify import project_slug

OWNER_ROLE = "owner"


async def list_projects(session: AsyncSession, user_id: uuid.UUID) -> list[Project]:
    """Projects the user owns or is a member of."""
    member_projects = select(ProjectMember.project_id).where(ProjectMember.user_id == user_id)
    result = await session.execute(
        select(Project)
        .where(or_(Project.owner_id == user_id, Project.id.in_(member_projects)))
        .order_by(Project.created_at.desc())
    )
    return list(result.scalars().all())


async def create_project(session: AsyncSession, owner_id: uuid.UUID, payload: ProjectCreate) -> Project:
    slug = await _generate_unique_slug(session, payload.name)
    project = Project(owner_id=owner_id, name=payload.name, description=payload.description, slug=slug)
    session.add(project)
    await session.flush()
    session.add(ProjectMember(project_id=project.id, user_id=owner_id, role=OWNER_ROLE))
    await session.commit()
    await session.refresh(project)
    return project


async def update_project(session: AsyncSession, project: Project, payload: ProjectUpdate) -> Project:
    if payload.name:
        project.name = payload.name
    if payload.description is not None:
        project.description = payload.description
    await session.commit()
    await session.refresh(project)
    return project


async def delete_project(session: AsyncSession, project: Project) -> None:
    await session.delete(project)
    await session.commit()


async def get_project_for_member(session: AsyncSession, project_id: uuid.UUID, user_id: uuid.UUID) -> Project:
    """Return the project when the user can see it; 404 otherwise."""
    project = await session.get(Project, project_id)
    if project is None or not await _is_member(session, project, user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project


async def get_project_for_owner(session: AsyncSession, project_id: uuid.UUID, user_id: uuid.UUID) -> Project:
    project = await get_project_for_member(session, project_id, user_id)
    if project.owner_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the project owner can do this")
    return project


async def add_member(session: AsyncSession, project: Project, payload: ProjectMemberCreate) -> ProjectMember:
    user = await session.get(User, payload.user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    member = ProjectMember(project_id=project.id, user_id=payload.user_id, role=payload.role)
    session.add(member)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User is already a member") from exc
    await session.refresh(member)
    return member


async def _is_member(session: AsyncSession, project: Project, user_id: uuid.UUID) -> bool:
    if project.owner_id == user_id:
        return True
    result = await session.execute(
        select(ProjectMember.id).where(
            ProjectMember.project_id == project.id,
            ProjectMember.user_id == user_id,
        )
    )
    return result.first() is not None


async def _generate_unique_slug(session: AsyncSession, name: str) -> str:
    """Generate a project slug that does not collide with existing projects."""
    base = project_slug(name)
    slug = base
    counter = 1
    while await _slug_exists(session, slug):
        counter += 1
        slug = project_slug(name, suffix=counter)
    return slug


async def _slug_exists(session: AsyncSession, slug: str) -> bool:
    result = await session.execute(select(Project.id).where(Project.slug == slug))
    return result.first() is not None
