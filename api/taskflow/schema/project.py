"""Project and membership schemas."""

from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field

from taskflow.schema.base import ORMModel, Timestamped


class ProjectCreate(BaseModel):
    """Payload for creating a project."""
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None


class ProjectUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None


class ProjectRead(Timestamped):
    """Project representation returned by the API."""
    owner_id: UUID
    name: str
    slug: str
    description: str | None = None


class ProjectMemberCreate(BaseModel):
    """Payload for granting a user access to a project."""
    user_id: UUID
    role: str = Field(default="member", pattern="^(member|admin)$")


class ProjectMemberRead(ORMModel):
    id: UUID
    project_id: UUID
    user_id: UUID
    role: str
