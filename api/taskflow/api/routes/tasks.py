"""Task, comment, dependency, and time-tracking endpoints.

Mutations here fire automation triggers; responses reflect any changes the
rules made.
"""

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.api.deps import get_current_user, get_db, get_member_project, get_member_task
from taskflow.models.project import Project
from taskflow.models.task import Task
from taskflow.models.user import User
from taskflow.schema.task import (
    CommentCreate,
    CommentRead,
    TaskCreate,
    TaskDependencyCreate,
    TaskDependencyRead,
    TaskRead,
    TaskUpdate,
    TimeEntryRead,
    TimeEntryStart,
)
from taskflow.services import task_service

router = APIRouter()


@router.get("/projects/{project_id}/tasks", response_model=list[TaskRead])
async def list_tasks(
    status_filter: str | None = Query(default=None, alias="status"),
    project: Project = Depends(get_member_project),
    session: AsyncSession = Depends(get_db),
):
    return await task_service.list_tasks(session, project.id, status_filter=status_filter)


@router.post("/projects/{project_id}/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
async def create_task(
    payload: TaskCreate,
    project: Project = Depends(get_member_project),
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Create a task and run the project's ``on_create`` automations."""
    return await task_service.create_task(session, project_id=project.id, user_id=current_user.id, payload=payload)


@router.get("/tasks/{task_id}", response_model=TaskRead)
async def get_task(task: Task = Depends(get_member_task)):
    return task


@router.patch("/tasks/{task_id}", response_model=TaskRead)
async def update_task(
    payload: TaskUpdate,
    task: Task = Depends(get_member_task),
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await task_service.update_task(session, task, user_id=current_user.id, payload=payload)


@router.delete(
    "/tasks/{task_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    response_model=None,
)
async def delete_task(
    task: Task = Depends(get_member_task),
    session: AsyncSession = Depends(get_db),
) -> None:
    await task_service.delete_task(session, task)


@router.get("/tasks/{task_id}/comments", response_model=list[CommentRead])
async def list_comments(
    task: Task = Depends(get_member_task),
    session: AsyncSession = Depends(get_db),
):
    return await task_service.list_comments(session, task.id)


@router.post("/tasks/{task_id}/comments", response_model=CommentRead, status_code=status.HTTP_201_CREATED)
async def add_comment(
    payload: CommentCreate,
    task: Task = Depends(get_member_task),
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await task_service.add_comment(session, task, user_id=current_user.id, payload=payload)


@router.post(
    "/tasks/{task_id}/dependencies",
    response_model=TaskDependencyRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_dependency(
    payload: TaskDependencyCreate,
    task: Task = Depends(get_member_task),
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await task_service.add_dependency(session, task, user_id=current_user.id, payload=payload)


@router.post(
    "/tasks/{task_id}/time-entries/start",
    response_model=TimeEntryRead,
    status_code=status.HTTP_201_CREATED,
)
async def start_timer(
    payload: TimeEntryStart | None = None,
    task: Task = Depends(get_member_task),
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await task_service.start_time_entry(
        session, task, user_id=current_user.id, payload=payload or TimeEntryStart()
    )


@router.post("/tasks/{task_id}/time-entries/stop", response_model=TimeEntryRead)
async def stop_timer(
    task: Task = Depends(get_member_task),
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Stop the caller's running timer and run ``on_time_tracked`` automations."""
    return await task_service.stop_time_entry(session, task, user_id=current_user.id)
