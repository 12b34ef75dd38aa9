"""Action handlers for automation rules.

Invariants:
- Each handler performs one write against the session and flushes it; the
  caller owns commit/rollback so a failed attempt leaves no partial rows.
- Identifiers come from the runtime context (task, project, acting user) and
  the action params; a missing identifier is an action fault, not a no-op.
- Every ``ActionKind`` has a handler; the table is checked at import.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable

import httpx
from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.core.config import settings
from taskflow.models.notification import EmailMessage, EmailStatus, Notification
from taskflow.models.task import Checklist, ChecklistItem, Comment, Task, TaskDependency, TimeEntry
from taskflow.schema.automation import (
    ActionKind,
    AddChecklistAction,
    AddCommentAction,
    AddDependencyAction,
    AssignUserAction,
    AutomationAction,
    AutomationContext,
    CreateTaskAction,
    SendEmailAction,
    SendNotificationAction,
    StartTimeTrackingAction,
    StopTimeTrackingAction,
    TriggerWebhookAction,
    UpdateFieldAction,
    UpdateStatusAction,
)
from taskflow.utils.datetime import ensure_utc, utcnow
from taskflow.utils.redaction import redact_headers, redact_secrets

logger = logging.getLogger("taskflow.services.automation_actions")

ActionHandler = Callable[[AsyncSession, Any, AutomationContext], Awaitable[dict[str, Any] | None]]

NOTIFICATION_TYPE = "automation"

# Rule-editor field names (and their snake_case spellings) mapped to Task columns.
TASK_FIELD_ALIASES: dict[str, str] = {
    "title": "title",
    "description": "description",
    "status": "status",
    "priority": "priority",
    "assignee": "assignee_id",
    "assigneeId": "assignee_id",
    "assignee_id": "assignee_id",
    "dueDate": "due_date",
    "due_date": "due_date",
    "customFields": "custom_fields",
    "custom_fields": "custom_fields",
}

_TASK_FIELD_ADAPTERS: dict[str, TypeAdapter] = {
    "title": TypeAdapter(str),
    "description": TypeAdapter(str | None),
    "status": TypeAdapter(str),
    "priority": TypeAdapter(str | None),
    "assignee_id": TypeAdapter(uuid.UUID | None),
    "due_date": TypeAdapter(datetime | None),
    "custom_fields": TypeAdapter(dict[str, Any] | None),
}


class AutomationExecutionError(RuntimeError):
    """Raised when an action cannot be carried out with the given params/context."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


async def _require_task(session: AsyncSession, context: AutomationContext) -> Task:
    if context.task_id is None:
        raise AutomationExecutionError("task_id_missing")
    task = await session.get(Task, context.task_id)
    if task is None or task.project_id != context.project_id:
        raise AutomationExecutionError(f"task_not_found:{context.task_id}")
    return task


def _acting_user(params_user: uuid.UUID | None, context: AutomationContext, action: str) -> uuid.UUID:
    user_id = params_user or context.user_id
    if user_id is None:
        raise AutomationExecutionError(f"{action}_missing_user")
    return user_id


async def _execute_update_field(
    session: AsyncSession, action: UpdateFieldAction, context: AutomationContext
) -> dict[str, Any]:
    params = action.params
    column = TASK_FIELD_ALIASES.get(params.field)
    if column is None:
        raise AutomationExecutionError(f"update_field_unsupported:{params.field}")
    try:
        value = _TASK_FIELD_ADAPTERS[column].validate_python(params.value)
    except ValidationError as exc:
        raise AutomationExecutionError(f"update_field_invalid_value:{params.field}") from exc
    task = await _require_task(session, context)
    setattr(task, column, value)
    await session.flush()
    return {"status": "updated", "task_id": str(task.id), "field": column}


async def _execute_send_notification(
    session: AsyncSession, action: SendNotificationAction, context: AutomationContext
) -> dict[str, Any]:
    params = action.params
    notification = Notification(
        user_id=params.user_id,
        type=NOTIFICATION_TYPE,
        title=params.title,
        message=params.message,
        payload={
            "taskId": str(context.task_id) if context.task_id else None,
            "automationId": str(context.automation_id) if context.automation_id else None,
        },
    )
    session.add(notification)
    await session.flush()
    return {"status": "notified", "notification_id": str(notification.id), "user_id": str(params.user_id)}


async def _execute_create_task(
    session: AsyncSession, action: CreateTaskAction, context: AutomationContext
) -> dict[str, Any]:
    params = action.params
    task = Task(
        project_id=context.project_id,
        title=params.title,
        description=params.description,
        status=params.status or "todo",
        priority=params.priority,
        assignee_id=params.assignee_id,
        due_date=params.due_date,
        custom_fields=params.custom_fields,
        created_by_id=context.user_id,
    )
    session.add(task)
    await session.flush()
    return {"status": "created", "task_id": str(task.id)}


async def _execute_update_status(
    session: AsyncSession, action: UpdateStatusAction, context: AutomationContext
) -> dict[str, Any]:
    task = await _require_task(session, context)
    previous = task.status
    task.status = action.params.status
    await session.flush()
    return {"status": "updated", "task_id": str(task.id), "from": previous, "to": task.status}


async def _execute_assign_user(
    session: AsyncSession, action: AssignUserAction, context: AutomationContext
) -> dict[str, Any]:
    task = await _require_task(session, context)
    task.assignee_id = action.params.user_id
    await session.flush()
    return {"status": "assigned", "task_id": str(task.id), "assignee_id": str(action.params.user_id)}


async def _execute_add_comment(
    session: AsyncSession, action: AddCommentAction, context: AutomationContext
) -> dict[str, Any]:
    task = await _require_task(session, context)
    author = _acting_user(None, context, "add_comment")
    comment = Comment(task_id=task.id, user_id=author, content=action.params.content, system=True)
    session.add(comment)
    await session.flush()
    return {"status": "commented", "comment_id": str(comment.id)}


async def _execute_add_checklist(
    session: AsyncSession, action: AddChecklistAction, context: AutomationContext
) -> dict[str, Any]:
    task = await _require_task(session, context)
    checklist = Checklist(task_id=task.id, name=action.params.name)
    session.add(checklist)
    await session.flush()
    for position, item in enumerate(action.params.items):
        session.add(
            ChecklistItem(
                checklist_id=checklist.id,
                content=item.content,
                completed=item.completed,
                position=position,
            )
        )
    await session.flush()
    return {"status": "created", "checklist_id": str(checklist.id), "items": len(action.params.items)}


async def _execute_add_dependency(
    session: AsyncSession, action: AddDependencyAction, context: AutomationContext
) -> dict[str, Any]:
    task = await _require_task(session, context)
    target_id = action.params.dependency_task_id
    if target_id == task.id:
        raise AutomationExecutionError("add_dependency_self_reference")
    target = await session.get(Task, target_id)
    if target is None:
        raise AutomationExecutionError(f"add_dependency_target_not_found:{target_id}")
    dependency = TaskDependency(type=action.params.type, from_task_id=task.id, to_task_id=target_id)
    session.add(dependency)
    await session.flush()
    return {"status": "linked", "dependency_id": str(dependency.id)}


def _webhook_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.automation_webhook_timeout_seconds)


async def _execute_trigger_webhook(
    session: AsyncSession, action: TriggerWebhookAction, context: AutomationContext
) -> dict[str, Any]:
    params = action.params
    body = params.payload if params.payload is not None else {"event": "automation", "context": context.snapshot()}
    logger.debug(
        "Automation webhook %s %s headers=%s",
        params.method,
        redact_secrets(params.url),
        redact_headers(params.headers),
    )
    async with _webhook_client() as client:
        response = await client.request(params.method, params.url, json=body, headers=params.headers)
    response.raise_for_status()
    logger.info(
        "Automation webhook delivered to %s (%s)",
        redact_secrets(params.url),
        response.status_code,
    )
    return {"status": "delivered", "status_code": response.status_code}


async def _execute_send_email(
    session: AsyncSession, action: SendEmailAction, context: AutomationContext
) -> dict[str, Any]:
    params = action.params
    message = EmailMessage(
        project_id=context.project_id,
        automation_rule_id=context.automation_id,
        to_address=str(params.to),
        subject=params.subject,
        body=params.body,
        status=EmailStatus.PENDING,
    )
    session.add(message)
    await session.flush()
    return {"status": message.status.value, "email_id": str(message.id)}


async def _execute_start_time_tracking(
    session: AsyncSession, action: StartTimeTrackingAction, context: AutomationContext
) -> dict[str, Any]:
    task = await _require_task(session, context)
    user_id = _acting_user(action.params.user_id, context, "start_time_tracking")
    entry = TimeEntry(
        task_id=task.id,
        user_id=user_id,
        start_time=utcnow(),
        description=action.params.description,
        billable=action.params.billable,
    )
    session.add(entry)
    await session.flush()
    return {"status": "started", "time_entry_id": str(entry.id)}


async def _execute_stop_time_tracking(
    session: AsyncSession, action: StopTimeTrackingAction, context: AutomationContext
) -> dict[str, Any] | None:
    if context.task_id is None:
        raise AutomationExecutionError("task_id_missing")
    user_id = _acting_user(action.params.user_id, context, "stop_time_tracking")
    entry = await find_open_time_entry(session, task_id=context.task_id, user_id=user_id)
    if entry is None:
        return None
    close_time_entry(entry)
    await session.flush()
    return {"status": "stopped", "time_entry_id": str(entry.id), "duration": entry.duration}


async def find_open_time_entry(
    session: AsyncSession, *, task_id: uuid.UUID, user_id: uuid.UUID
) -> TimeEntry | None:
    """Return the most recent running time entry for a task and user."""
    result = await session.execute(
        select(TimeEntry)
        .where(
            TimeEntry.task_id == task_id,
            TimeEntry.user_id == user_id,
            TimeEntry.end_time.is_(None),
        )
        .order_by(TimeEntry.start_time.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def close_time_entry(entry: TimeEntry, *, end_time: datetime | None = None) -> TimeEntry:
    """Stamp the end time and the elapsed seconds (rounded half up)."""
    ended = end_time or utcnow()
    elapsed = (ended - ensure_utc(entry.start_time)).total_seconds()
    entry.end_time = ended
    entry.duration = max(0, math.floor(elapsed + 0.5))
    return entry


ACTION_HANDLERS: dict[ActionKind, ActionHandler] = {
    ActionKind.UPDATE_FIELD: _execute_update_field,
    ActionKind.SEND_NOTIFICATION: _execute_send_notification,
    ActionKind.CREATE_TASK: _execute_create_task,
    ActionKind.UPDATE_STATUS: _execute_update_status,
    ActionKind.ASSIGN_USER: _execute_assign_user,
    ActionKind.ADD_COMMENT: _execute_add_comment,
    ActionKind.ADD_CHECKLIST: _execute_add_checklist,
    ActionKind.ADD_DEPENDENCY: _execute_add_dependency,
    ActionKind.TRIGGER_WEBHOOK: _execute_trigger_webhook,
    ActionKind.SEND_EMAIL: _execute_send_email,
    ActionKind.START_TIME_TRACKING: _execute_start_time_tracking,
    ActionKind.STOP_TIME_TRACKING: _execute_stop_time_tracking,
}

_unhandled = set(ActionKind) - set(ACTION_HANDLERS)
if _unhandled:  # pragma: no cover - guards new ActionKind members
    raise RuntimeError(f"Automation action kinds without handlers: {sorted(k.value for k in _unhandled)}")


async def execute_action(
    session: AsyncSession, action: AutomationAction, context: AutomationContext
) -> dict[str, Any] | None:
    """Dispatch an action to its handler and return the handler's summary."""
    try:
        kind = ActionKind(action.type)
    except ValueError as exc:
        raise AutomationExecutionError(f"unsupported_action:{action.type}") from exc
    handler = ACTION_HANDLERS.get(kind)
    if handler is None:
        raise AutomationExecutionError(f"unsupported_action:{action.type}")
    return await handler(session, action, context)
