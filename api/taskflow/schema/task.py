"""Task, comment, dependency, and time-entry schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from taskflow.schema.base import ORMModel, Timestamped


class TaskCreate(BaseModel):
    """Payload for creating a task inside a project."""
    title: str = Field(min_length=1, max_length=500)
    description: str | None = None
    status: str = Field(default="todo", min_length=1, max_length=64)
    priority: str | None = Field(default=None, max_length=32)
    assignee_id: UUID | None = None
    due_date: datetime | None = None
    custom_fields: dict[str, Any] | None = None


class TaskUpdate(BaseModel):
    """Partial task update; only fields present in the payload are applied."""
    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    status: str | None = Field(default=None, min_length=1, max_length=64)
    priority: str | None = Field(default=None, max_length=32)
    assignee_id: UUID | None = None
    due_date: datetime | None = None
    custom_fields: dict[str, Any] | None = None


class TaskRead(Timestamped):
    """Task representation returned by the API."""
    project_id: UUID
    title: str
    description: str | None = None
    status: str
    priority: str | None = None
    assignee_id: UUID | None = None
    due_date: datetime | None = None
    custom_fields: dict[str, Any] | None = None
    created_by_id: UUID | None = None


class CommentCreate(BaseModel):
    content: str = Field(min_length=1)


class CommentRead(ORMModel):
    id: UUID
    task_id: UUID
    user_id: UUID
    content: str
    system: bool
    created_at: datetime


class TaskDependencyCreate(BaseModel):
    """Payload for linking the task to a task it depends on."""
    depends_on_task_id: UUID
    type: str = Field(default="blocks", max_length=32)


class TaskDependencyRead(ORMModel):
    id: UUID
    type: str
    from_task_id: UUID
    to_task_id: UUID
    created_at: datetime


class TimeEntryStart(BaseModel):
    description: str | None = Field(default=None, max_length=500)
    billable: bool = False


class TimeEntryRead(ORMModel):
    id: UUID
    task_id: UUID
    user_id: UUID
    start_time: datetime
    end_time: datetime | None = None
    duration: int | None = None
    description: str | None = None
    billable: bool
