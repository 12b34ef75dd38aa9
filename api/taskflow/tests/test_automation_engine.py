from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from taskflow.core.config import settings
from taskflow.db.base import Base
from taskflow.models.automation import AutomationRun
from taskflow.models.notification import EmailMessage, Notification
from taskflow.models.task import Task
from taskflow.schema.automation import ActionKind, AutomationRuleCreate, action_adapter, dump_action
from taskflow.services import automation_actions, automation_engine
from taskflow.services.automation_engine import process_automation_rules, run_rule
from taskflow.tests.utils import add_rule, seed_workspace
from taskflow.utils.datetime import utcnow


def _status_context(workspace, status: str = "done", old: str = "todo") -> dict:
    return {
        "projectId": workspace["project_id"],
        "taskId": workspace["task_id"],
        "userId": workspace["user_id"],
        "status": status,
        "_changes": {"status": {"old": old, "new": status}},
    }


def _notify(workspace, title: str = "Task completed") -> dict:
    return {
        "type": "send_notification",
        "params": {"title": title, "message": "A task was marked done", "userId": str(workspace["user_id"])},
    }


async def _run_count(session, rule_id) -> int:
    return await session.scalar(
        select(func.count()).select_from(AutomationRun).where(AutomationRun.rule_id == rule_id)
    )


@pytest.fixture()
def strict_rules(monkeypatch):
    monkeypatch.setattr(settings, "automation_strict", True)


@pytest.fixture()
def lenient_rules(monkeypatch):
    monkeypatch.setattr(settings, "automation_strict", False)


@pytest.mark.asyncio
async def test_status_done_rule_sends_notification(session, workspace):
    rule_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        conditions=[{"field": "status", "operator": "equals", "value": "done"}],
        actions=[_notify(workspace)],
    )

    outcomes = await process_automation_rules(session, "on_status_change", _status_context(workspace))

    assert [outcome.status for outcome in outcomes] == ["completed"]
    notification = (await session.execute(select(Notification))).scalar_one()
    assert notification.type == "automation"
    assert notification.title == "Task completed"
    assert notification.user_id == workspace["user_id"]
    assert notification.payload == {"taskId": str(workspace["task_id"]), "automationId": str(rule_id)}
    run = (await session.execute(select(AutomationRun))).scalar_one()
    assert run.success is True
    assert run.error is None
    assert run.context["status"] == "done"
    assert run.detail["actions"][0]["status"] == "completed"


@pytest.mark.asyncio
async def test_unmet_conditions_skip_without_a_run(session, workspace):
    rule_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        conditions=[{"field": "status", "operator": "equals", "value": "done"}],
        actions=[_notify(workspace)],
    )

    outcomes = await process_automation_rules(
        session, "on_status_change", _status_context(workspace, status="in_review")
    )

    assert outcomes[0].status == "skipped"
    assert outcomes[0].reason == "conditions_not_met"
    assert await _run_count(session, rule_id) == 0
    assert (await session.execute(select(Notification))).first() is None


@pytest.mark.asyncio
async def test_disabled_rules_are_never_evaluated(session, workspace):
    rule_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        enabled=False,
        actions=[{"type": "update_status", "params": {"status": "archived"}}],
    )

    outcomes = await process_automation_rules(session, "on_status_change", _status_context(workspace))

    assert outcomes == []
    assert await _run_count(session, rule_id) == 0
    task = await session.get(Task, workspace["task_id"], populate_existing=True)
    assert task.status == "todo"


@pytest.mark.asyncio
async def test_rules_only_match_their_trigger(session, workspace):
    await add_rule(session, project_id=workspace["project_id"], trigger="on_comment", actions=[_notify(workspace)])

    outcomes = await process_automation_rules(session, "on_status_change", _status_context(workspace))

    assert outcomes == []


@pytest.mark.asyncio
async def test_max_runs_is_a_hard_ceiling(session, workspace):
    rule_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        actions=[_notify(workspace)],
        metadata={"maxRuns": 2},
    )

    statuses = []
    for _ in range(3):
        outcomes = await process_automation_rules(session, "on_status_change", _status_context(workspace))
        statuses.append((outcomes[0].status, outcomes[0].reason))

    assert statuses == [("completed", None), ("completed", None), ("skipped", "max_runs")]
    assert await _run_count(session, rule_id) == 2


@pytest.mark.asyncio
async def test_cooldown_blocks_until_elapsed(session, workspace):
    rule_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        actions=[_notify(workspace)],
        metadata={"cooldown": 3600},
    )

    first = await process_automation_rules(session, "on_status_change", _status_context(workspace))
    second = await process_automation_rules(session, "on_status_change", _status_context(workspace))
    assert first[0].status == "completed"
    assert (second[0].status, second[0].reason) == ("skipped", "cooldown")
    assert await _run_count(session, rule_id) == 1

    run = (await session.execute(select(AutomationRun))).scalar_one()
    run.created_at = utcnow() - timedelta(hours=2)
    await session.commit()

    third = await process_automation_rules(session, "on_status_change", _status_context(workspace))
    assert third[0].status == "completed"
    assert await _run_count(session, rule_id) == 2


@pytest.mark.asyncio
async def test_zero_max_runs_and_cooldown_disable_the_gates(session, workspace):
    rule_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        actions=[_notify(workspace)],
        metadata={"maxRuns": 0, "cooldownSeconds": 0},
    )

    for _ in range(3):
        await process_automation_rules(session, "on_status_change", _status_context(workspace))

    assert await _run_count(session, rule_id) == 3


@pytest.mark.asyncio
async def test_retry_succeeds_on_third_attempt_without_fallback(session, workspace, monkeypatch):
    calls = {"primary": 0, "fallback": 0}

    async def flaky(session, action, context):
        calls["primary"] += 1
        if calls["primary"] < 3:
            raise RuntimeError("temporarily unavailable")
        return {"status": "ok"}

    async def fallback(session, action, context):
        calls["fallback"] += 1
        return {"status": "fallback"}

    monkeypatch.setitem(automation_actions.ACTION_HANDLERS, ActionKind.SEND_NOTIFICATION, flaky)
    monkeypatch.setitem(automation_actions.ACTION_HANDLERS, ActionKind.SEND_EMAIL, fallback)
    await add_rule(
        session,
        project_id=workspace["project_id"],
        actions=[_notify(workspace)],
        metadata={
            "errorHandling": {
                "retryCount": 3,
                "retryDelay": 10,
                "fallbackAction": {
                    "type": "send_email",
                    "params": {"to": "ops@example.com", "subject": "Failed", "body": "x"},
                },
            }
        },
    )

    outcomes = await process_automation_rules(session, "on_status_change", _status_context(workspace))

    assert calls == {"primary": 3, "fallback": 0}
    action_detail = outcomes[0].detail["actions"][0]
    assert action_detail["status"] == "completed"
    assert action_detail["attempts"] == 3
    assert "fallback" not in action_detail


@pytest.mark.asyncio
async def test_fallback_runs_once_after_retries_are_exhausted(session, workspace, monkeypatch):
    calls = {"primary": 0}
    fallback_errors: list[str] = []

    async def always_fails(session, action, context):
        calls["primary"] += 1
        raise RuntimeError("boom")

    async def record_fallback(session, action, context):
        fallback_errors.append(context.value_of("error"))
        return {"status": "recorded"}

    monkeypatch.setitem(automation_actions.ACTION_HANDLERS, ActionKind.UPDATE_STATUS, always_fails)
    monkeypatch.setitem(automation_actions.ACTION_HANDLERS, ActionKind.ADD_COMMENT, record_fallback)
    rule_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        actions=[{"type": "update_status", "params": {"status": "blocked"}}],
        metadata={
            "errorHandling": {
                "retryCount": 1,
                "retryDelay": 10,
                "fallbackAction": {"type": "add_comment", "params": {"content": "Automation failed"}},
            }
        },
    )

    outcomes = await process_automation_rules(session, "on_status_change", _status_context(workspace))

    assert calls["primary"] == 2
    assert fallback_errors == ["boom"]
    action_detail = outcomes[0].detail["actions"][0]
    assert action_detail["status"] == "failed"
    assert action_detail["fallback"]["status"] == "completed"
    run = (await session.execute(select(AutomationRun).where(AutomationRun.rule_id == rule_id))).scalar_one()
    assert run.success is True


@pytest.mark.asyncio
async def test_failed_action_does_not_stop_later_actions(session, workspace):
    await add_rule(
        session,
        project_id=workspace["project_id"],
        actions=[
            {"type": "update_field", "params": {"field": "bogus", "value": 1}},
            _notify(workspace),
        ],
    )

    outcomes = await process_automation_rules(session, "on_status_change", _status_context(workspace))

    statuses = [entry["status"] for entry in outcomes[0].detail["actions"]]
    assert statuses == ["failed", "completed"]
    assert "update_field_unsupported" in outcomes[0].detail["actions"][0]["error"]
    assert (await session.execute(select(Notification))).scalar_one().title == "Task completed"


@pytest.mark.asyncio
async def test_failing_rule_is_recorded_and_isolated(session, workspace, strict_rules):
    broken_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        name="broken",
        priority=10,
        actions=[{"type": "teleport", "params": {}}],
    )
    healthy_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        name="healthy",
        actions=[_notify(workspace)],
    )

    outcomes = await process_automation_rules(session, "on_status_change", _status_context(workspace))

    assert [(outcome.rule_id, outcome.status) for outcome in outcomes] == [
        (broken_id, "failed"),
        (healthy_id, "completed"),
    ]
    broken_run = (
        await session.execute(select(AutomationRun).where(AutomationRun.rule_id == broken_id))
    ).scalar_one()
    assert broken_run.success is False
    error = json.loads(broken_run.error)
    assert error["type"] == "AutomationConfigError"
    assert await _run_count(session, healthy_id) == 1


@pytest.mark.asyncio
async def test_lenient_mode_skips_unknown_conditions_and_drops_unknown_actions(
    session, workspace, lenient_rules
):
    bad_condition_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        name="bad condition",
        conditions=[{"field": "status", "operator": "resembles", "value": "done"}],
        actions=[_notify(workspace)],
    )
    bad_action_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        name="bad action",
        actions=[{"type": "teleport", "params": {}}, _notify(workspace, title="Still sent")],
    )

    outcomes = {
        outcome.rule_id: outcome
        for outcome in await process_automation_rules(session, "on_status_change", _status_context(workspace))
    }

    assert outcomes[bad_condition_id].status == "skipped"
    assert await _run_count(session, bad_condition_id) == 0
    assert outcomes[bad_action_id].status == "completed"
    assert [entry["type"] for entry in outcomes[bad_action_id].detail["actions"]] == ["send_notification"]
    assert (await session.execute(select(Notification))).scalar_one().title == "Still sent"


@pytest.mark.asyncio
async def test_actions_round_trip_through_storage(session, workspace):
    payload = AutomationRuleCreate.model_validate(
        {
            "name": "Escalate",
            "trigger": "on_priority_change",
            "conditions": [{"field": "priority", "operator": "changed_to", "value": "urgent"}],
            "actions": [
                {"type": "assign_user", "params": {"userId": str(workspace["user_id"])}},
                {"type": "add_dependency", "params": {"dependencyTaskId": str(workspace["task_id"])}},
                {"type": "send_email", "params": {"to": "a@example.com", "subject": "s", "body": "b", "cc": "x"}},
            ],
            "metadata": {"cooldownSeconds": 30, "errorHandling": {"retryCount": 2}},
        }
    )
    stored = [dump_action(action) for action in payload.actions]

    assert stored[0] == {"type": "assign_user", "params": {"userId": str(workspace["user_id"])}}
    assert stored[1]["params"] == {"dependencyTaskId": str(workspace["task_id"]), "type": "blocks"}
    assert stored[2]["params"]["cc"] == "x"
    assert [action_adapter.validate_python(raw) for raw in stored] == payload.actions
    assert payload.metadata.cooldown == 30


@pytest.mark.asyncio
async def test_run_rule_reports_disabled_and_missing_rules(session, workspace):
    rule_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        enabled=False,
        actions=[_notify(workspace)],
    )

    skipped = await run_rule(session, rule_id=rule_id, context={"taskId": str(workspace["task_id"])})
    forced = await run_rule(
        session,
        rule_id=rule_id,
        context={"taskId": str(workspace["task_id"])},
        allow_disabled=True,
    )

    assert (skipped["status"], skipped["reason"]) == ("skipped", "rule_disabled")
    assert forced["status"] == "completed"
    assert forced["run_id"] is not None
    missing = await run_rule(session, rule_id=workspace["task_id"])
    assert (missing["status"], missing["reason"]) == ("failed", "rule_not_found")


@pytest.mark.asyncio
async def test_fallback_email_lands_in_outbox(session, workspace, monkeypatch):
    async def always_fails(session, action, context):
        raise RuntimeError("webhook down")

    monkeypatch.setitem(automation_actions.ACTION_HANDLERS, ActionKind.TRIGGER_WEBHOOK, always_fails)
    rule_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        actions=[{"type": "trigger_webhook", "params": {"url": "https://hooks.example.com/x"}}],
        metadata={
            "errorHandling": {
                "fallbackAction": {
                    "type": "send_email",
                    "params": {"to": "ops@example.com", "subject": "Webhook failed", "body": "See run log"},
                }
            }
        },
    )

    await process_automation_rules(session, "on_status_change", _status_context(workspace))

    message = (await session.execute(select(EmailMessage))).scalar_one()
    assert message.subject == "Webhook failed"
    assert message.automation_rule_id == rule_id


@pytest.mark.asyncio
async def test_concurrent_triggers_share_the_max_runs_ceiling(tmp_path, monkeypatch):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'automations.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    SessionFactory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    calls = {"count": 0}

    async def slow_notification(session, action, context):
        calls["count"] += 1
        await asyncio.sleep(0.2)
        return {"status": "sent"}

    monkeypatch.setitem(automation_actions.ACTION_HANDLERS, ActionKind.SEND_NOTIFICATION, slow_notification)
    try:
        async with SessionFactory() as setup:
            workspace = await seed_workspace(setup)
            rule_id = await add_rule(
                setup,
                project_id=workspace["project_id"],
                actions=[_notify(workspace)],
                metadata={"maxRuns": 1},
            )

        async def fire():
            async with SessionFactory() as session:
                return await process_automation_rules(session, "on_status_change", _status_context(workspace))

        first, second = await asyncio.gather(fire(), fire())

        assert sorted(outcomes[0].status for outcomes in (first, second)) == ["completed", "skipped"]
        assert calls["count"] == 1
        async with SessionFactory() as check:
            assert await _run_count(check, rule_id) == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_unrecordable_failure_does_not_escape_or_block_later_rules(session, workspace, monkeypatch):
    first_id = await add_rule(session, project_id=workspace["project_id"], name="first", priority=5)
    second_id = await add_rule(session, project_id=workspace["project_id"], name="second")

    async def unavailable(session, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(automation_engine, "_record_run", unavailable)

    outcomes = await process_automation_rules(session, "on_status_change", _status_context(workspace))

    assert [(outcome.rule_id, outcome.status, outcome.run_id) for outcome in outcomes] == [
        (first_id, "failed", None),
        (second_id, "failed", None),
    ]
    assert json.loads(outcomes[0].reason)["message"] == "database unavailable"
    assert await _run_count(session, first_id) == 0


@pytest.mark.asyncio
async def test_retry_count_is_not_capped(session, workspace, monkeypatch):
    calls = {"count": 0}

    async def always_fails(session, action, context):
        calls["count"] += 1
        raise RuntimeError("still down")

    monkeypatch.setitem(automation_actions.ACTION_HANDLERS, ActionKind.SEND_NOTIFICATION, always_fails)
    rule_id = await add_rule(
        session,
        project_id=workspace["project_id"],
        actions=[_notify(workspace)],
        metadata={"errorHandling": {"retryCount": 12, "retryDelay": 0}},
    )

    outcomes = await process_automation_rules(session, "on_status_change", _status_context(workspace))

    assert calls["count"] == 13
    assert outcomes[0].status == "completed"
    assert outcomes[0].detail["actions"][0]["attempts"] == 13
    assert await _run_count(session, rule_id) == 1
