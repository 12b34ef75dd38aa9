"""Task mutations fire the automation triggers rules listen on."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from taskflow.models.automation import AutomationRun
from taskflow.models.task import Comment, Task, TimeEntry
from taskflow.schema.task import CommentCreate, TaskCreate, TaskDependencyCreate, TaskUpdate
from taskflow.services import automation_engine, task_service
from taskflow.tests.utils import add_rule
from taskflow.utils.datetime import utcnow


@pytest.fixture()
def fired(monkeypatch):
    """Record every trigger the task service fires, without running rules."""
    calls: list[tuple[str, dict]] = []

    async def _record(session, trigger, context):
        calls.append((trigger.value, context))
        return []

    monkeypatch.setattr(automation_engine, "process_automation_rules", _record)
    return calls


@pytest.mark.asyncio
async def test_create_task_runs_on_create_rules(session, workspace):
    await add_rule(
        session,
        project_id=workspace["project_id"],
        trigger="on_create",
        conditions=[{"field": "title", "operator": "contains", "value": "bug"}],
        actions=[{"type": "update_field", "params": {"field": "priority", "value": "high"}}],
    )

    task = await task_service.create_task(
        session,
        project_id=workspace["project_id"],
        user_id=workspace["user_id"],
        payload=TaskCreate(title="Login bug on Safari"),
    )

    assert task.priority == "high"
    run = (await session.execute(select(AutomationRun))).scalar_one()
    assert run.trigger == "on_create"
    assert run.context["taskId"] == str(task.id)


@pytest.mark.asyncio
async def test_update_fires_one_trigger_per_changed_aspect_in_order(session, workspace, fired):
    task = await session.get(Task, workspace["task_id"])

    await task_service.update_task(
        session,
        task,
        user_id=workspace["user_id"],
        payload=TaskUpdate(priority="low", status="done", assignee_id=workspace["user_id"]),
    )

    assert [trigger for trigger, _ in fired] == [
        "on_status_change",
        "on_assignee_change",
        "on_priority_change",
    ]
    changes = fired[0][1]["_changes"]
    assert changes["status"] == {"old": "todo", "new": "done"}
    assert changes["assignee"] == {"old": None, "new": str(workspace["user_id"])}
    assert all(context["_changes"] == changes for _, context in fired)


@pytest.mark.asyncio
async def test_update_without_changes_fires_nothing(session, workspace, fired):
    task = await session.get(Task, workspace["task_id"])

    await task_service.update_task(session, task, user_id=workspace["user_id"], payload=TaskUpdate(status="todo"))

    assert fired == []


@pytest.mark.asyncio
async def test_status_change_rule_comments_on_task(session, workspace):
    await add_rule(
        session,
        project_id=workspace["project_id"],
        trigger="on_status_change",
        conditions=[{"field": "status", "operator": "changed_to", "value": "done"}],
        actions=[{"type": "add_comment", "params": {"content": "Closed by automation"}}],
    )
    task = await session.get(Task, workspace["task_id"])

    await task_service.update_task(session, task, user_id=workspace["user_id"], payload=TaskUpdate(status="done"))

    comment = (await session.execute(select(Comment))).scalar_one()
    assert comment.content == "Closed by automation"
    assert comment.system is True
    assert comment.user_id == workspace["user_id"]


@pytest.mark.asyncio
async def test_comment_dependency_and_timer_fire_their_triggers(session, workspace, fired):
    task = await session.get(Task, workspace["task_id"])
    other = Task(project_id=workspace["project_id"], title="Prepare changelog")
    session.add(other)
    await session.commit()

    await task_service.add_comment(session, task, user_id=workspace["user_id"], payload=CommentCreate(content="On it"))
    await task_service.add_dependency(
        session, task, user_id=workspace["user_id"], payload=TaskDependencyCreate(depends_on_task_id=other.id)
    )
    session.add(
        TimeEntry(task_id=task.id, user_id=workspace["user_id"], start_time=utcnow() - timedelta(minutes=5))
    )
    await session.commit()
    entry = await task_service.stop_time_entry(session, task, user_id=workspace["user_id"])

    assert [trigger for trigger, _ in fired] == ["on_comment", "on_dependency_change", "on_time_tracked"]
    assert fired[0][1]["comment"] == "On it"
    assert fired[1][1]["dependencyTaskId"] == str(other.id)
    assert 299 <= fired[2][1]["duration"] <= 301
    assert entry.end_time is not None


@pytest.mark.asyncio
async def test_failing_rule_does_not_undo_the_task_update(session, workspace):
    await add_rule(
        session,
        project_id=workspace["project_id"],
        trigger="on_status_change",
        actions=[{"type": "assign_user", "params": {"userId": "not-a-uuid"}}],
    )
    task = await session.get(Task, workspace["task_id"])

    updated = await task_service.update_task(
        session, task, user_id=workspace["user_id"], payload=TaskUpdate(status="in_progress")
    )

    assert updated.status == "in_progress"
    run = (await session.execute(select(AutomationRun))).scalar_one()
    assert run.success is False
