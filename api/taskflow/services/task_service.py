"""Task mutations and the automation triggers they fire.

Invariants:
- A mutation is committed before automations run, so a failing rule never
  rolls back the user's change.
- Task updates fire one trigger per changed aspect, each call carrying the
  full ``_changes`` map.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.models.task import Comment, Task, TaskDependency, TimeEntry
from taskflow.schema.automation import TriggerKind
from taskflow.schema.task import CommentCreate, TaskCreate, TaskDependencyCreate, TaskUpdate, TimeEntryStart
from taskflow.services import automation_engine, project_service
from taskflow.services.automation_actions import close_time_entry, find_open_time_entry
from taskflow.services.automation_engine import RuleOutcome
from taskflow.utils.datetime import ensure_utc, utcnow

logger = logging.getLogger("taskflow.services.task_service")

# Context/_changes key for each Task column a rule can observe.
SNAPSHOT_FIELDS: dict[str, str] = {
    "title": "title",
    "description": "description",
    "status": "status",
    "priority": "priority",
    "assignee_id": "assignee",
    "due_date": "dueDate",
    "custom_fields": "customFields",
}

# Update triggers in firing order, keyed by the change that fires them.
CHANGE_TRIGGERS: list[tuple[str, TriggerKind]] = [
    ("status", TriggerKind.ON_STATUS_CHANGE),
    ("assignee", TriggerKind.ON_ASSIGNEE_CHANGE),
    ("dueDate", TriggerKind.ON_DUE_DATE_CHANGE),
    ("priority", TriggerKind.ON_PRIORITY_CHANGE),
    ("customFields", TriggerKind.ON_CUSTOM_FIELD_CHANGE),
]


def _json_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def task_snapshot(task: Task) -> dict[str, Any]:
    """Rule-visible task values keyed the way conditions reference them."""
    return {key: _json_value(getattr(task, column)) for column, key in SNAPSHOT_FIELDS.items()}


def build_context(
    task: Task,
    *,
    user_id: uuid.UUID | None,
    changes: dict[str, dict[str, Any]] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Assemble the automation context for a task event."""
    context: dict[str, Any] = {
        "projectId": task.project_id,
        "taskId": task.id,
        "userId": user_id,
        **task_snapshot(task),
        **extra,
    }
    if changes:
        context["_changes"] = changes
    return context


def diff_snapshots(before: dict[str, Any], after: dict[str, Any]) -> dict[str, dict[str, Any]]:
    return {
        key: {"old": before.get(key), "new": value}
        for key, value in after.items()
        if before.get(key) != value
    }


async def _fire(
    session: AsyncSession, trigger: TriggerKind, context: dict[str, Any]
) -> list[RuleOutcome]:
    return await automation_engine.process_automation_rules(session, trigger, context)


async def get_task_for_member(session: AsyncSession, task_id: uuid.UUID, user_id: uuid.UUID) -> Task:
    task = await session.get(Task, task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    await project_service.get_project_for_member(session, task.project_id, user_id)
    return task


async def list_tasks(session: AsyncSession, project_id: uuid.UUID, *, status_filter: str | None = None) -> list[Task]:
    stmt = select(Task).where(Task.project_id == project_id)
    if status_filter:
        stmt = stmt.where(Task.status == status_filter)
    result = await session.execute(stmt.order_by(Task.created_at))
    return list(result.scalars().all())


async def create_task(
    session: AsyncSession, *, project_id: uuid.UUID, user_id: uuid.UUID, payload: TaskCreate
) -> Task:
    task = Task(project_id=project_id, created_by_id=user_id, **payload.model_dump())
    session.add(task)
    await session.commit()
    task_id = task.id

    await _fire(session, TriggerKind.ON_CREATE, build_context(task, user_id=user_id))
    return await _reload(session, task_id)


async def update_task(session: AsyncSession, task: Task, *, user_id: uuid.UUID, payload: TaskUpdate) -> Task:
    """Apply a partial update, then fire the change triggers it implies."""
    task_id = task.id
    before = task_snapshot(task)
    for column in payload.model_fields_set:
        value = getattr(payload, column)
        if column in {"title", "status"} and value is None:
            continue
        setattr(task, column, value)
    await session.commit()

    changes = diff_snapshots(before, task_snapshot(task))
    if not changes:
        return task
    context = build_context(task, user_id=user_id, changes=changes)
    for key, trigger in CHANGE_TRIGGERS:
        if key in changes:
            await _fire(session, trigger, context)
    return await _reload(session, task_id)


async def delete_task(session: AsyncSession, task: Task) -> None:
    await session.delete(task)
    await session.commit()


async def list_comments(session: AsyncSession, task_id: uuid.UUID) -> list[Comment]:
    result = await session.execute(
        select(Comment).where(Comment.task_id == task_id).order_by(Comment.created_at)
    )
    return list(result.scalars().all())


async def add_comment(session: AsyncSession, task: Task, *, user_id: uuid.UUID, payload: CommentCreate) -> Comment:
    comment = Comment(task_id=task.id, user_id=user_id, content=payload.content)
    session.add(comment)
    await session.commit()
    comment_id = comment.id

    context = build_context(task, user_id=user_id, commentId=str(comment_id), comment=payload.content)
    await _fire(session, TriggerKind.ON_COMMENT, context)
    return await session.get(Comment, comment_id, populate_existing=True)


async def add_dependency(
    session: AsyncSession, task: Task, *, user_id: uuid.UUID, payload: TaskDependencyCreate
) -> TaskDependency:
    if payload.depends_on_task_id == task.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A task cannot depend on itself")
    target = await session.get(Task, payload.depends_on_task_id)
    if target is None or target.project_id != task.project_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dependency task not found")
    dependency = TaskDependency(type=payload.type, from_task_id=task.id, to_task_id=target.id)
    session.add(dependency)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Dependency already exists") from exc
    dependency_id = dependency.id

    context = build_context(
        task,
        user_id=user_id,
        dependencyTaskId=str(target.id),
        dependencyType=payload.type,
    )
    await _fire(session, TriggerKind.ON_DEPENDENCY_CHANGE, context)
    return await session.get(TaskDependency, dependency_id, populate_existing=True)


async def start_time_entry(
    session: AsyncSession, task: Task, *, user_id: uuid.UUID, payload: TimeEntryStart
) -> TimeEntry:
    running = await find_open_time_entry(session, task_id=task.id, user_id=user_id)
    if running is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A timer is already running")
    entry = TimeEntry(
        task_id=task.id,
        user_id=user_id,
        start_time=utcnow(),
        description=payload.description,
        billable=payload.billable,
    )
    session.add(entry)
    await session.commit()
    await session.refresh(entry)
    return entry


async def stop_time_entry(session: AsyncSession, task: Task, *, user_id: uuid.UUID) -> TimeEntry:
    """Close the user's running timer on the task and fire ``on_time_tracked``."""
    entry = await find_open_time_entry(session, task_id=task.id, user_id=user_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No running timer for this task")
    close_time_entry(entry)
    await session.commit()
    entry_id = entry.id
    duration = entry.duration

    context = build_context(task, user_id=user_id, timeEntryId=str(entry_id), duration=duration)
    await _fire(session, TriggerKind.ON_TIME_TRACKED, context)
    return await session.get(TimeEntry, entry_id, populate_existing=True)


async def _reload(session: AsyncSession, task_id: uuid.UUID) -> Task:
    task = await session.get(Task, task_id, populate_existing=True)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return task
