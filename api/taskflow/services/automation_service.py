"""Automation rule storage, scheduling, and manual execution helpers."""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.jobs import schedule_registry
from taskflow.models.automation import AutomationRule, AutomationRun
from taskflow.schema.automation import (
    AutomationRuleCreate,
    AutomationRuleUpdate,
    RuleMetadata,
    dump_action,
    dump_condition,
    dump_metadata,
)
from taskflow.services import automation_engine
from taskflow.services.task_queue import task_queue


def _priority(metadata: RuleMetadata | None) -> int:
    if metadata is None or metadata.priority is None:
        return 0
    return metadata.priority


def _sync_schedule(rule: AutomationRule) -> None:
    schedule = (rule.rule_metadata or {}).get("schedule")
    schedule_registry.sync_rule_schedule(
        rule_id=rule.id,
        trigger=rule.trigger,
        enabled=rule.enabled,
        schedule=schedule,
    )


async def list_rules(session: AsyncSession, *, project_id: uuid.UUID) -> list[AutomationRule]:
    """List automation rules for a project in processing order."""
    result = await session.execute(
        select(AutomationRule)
        .where(AutomationRule.project_id == project_id)
        .order_by(AutomationRule.priority.desc(), AutomationRule.name)
    )
    return list(result.scalars().all())


async def get_rule(session: AsyncSession, *, project_id: uuid.UUID, rule_id: uuid.UUID) -> AutomationRule:
    """Fetch a single automation rule by ID."""
    result = await session.execute(
        select(AutomationRule).where(AutomationRule.id == rule_id, AutomationRule.project_id == project_id)
    )
    rule = result.scalar_one_or_none()
    if not rule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Automation rule not found")
    return rule


async def create_rule(
    session: AsyncSession,
    *,
    project_id: uuid.UUID,
    user_id: uuid.UUID,
    payload: AutomationRuleCreate,
) -> AutomationRule:
    """Create a new automation rule."""
    rule = AutomationRule(
        project_id=project_id,
        created_by_id=user_id,
        name=payload.name,
        description=payload.description,
        enabled=payload.enabled,
        trigger=payload.trigger.value,
        conditions=[dump_condition(condition) for condition in payload.conditions],
        actions=[dump_action(action) for action in payload.actions],
        rule_metadata=dump_metadata(payload.metadata),
        priority=_priority(payload.metadata),
    )
    session.add(rule)
    await session.commit()
    await session.refresh(rule)
    _sync_schedule(rule)
    return rule


async def update_rule(
    session: AsyncSession, *, rule: AutomationRule, payload: AutomationRuleUpdate
) -> AutomationRule:
    """Update an automation rule."""
    fields = payload.model_fields_set
    if "name" in fields and payload.name is not None:
        rule.name = payload.name
    if "description" in fields:
        rule.description = payload.description
    if "enabled" in fields and payload.enabled is not None:
        rule.enabled = payload.enabled
    if "trigger" in fields and payload.trigger is not None:
        rule.trigger = payload.trigger.value
    if "conditions" in fields and payload.conditions is not None:
        rule.conditions = [dump_condition(condition) for condition in payload.conditions]
    if "actions" in fields and payload.actions is not None:
        rule.actions = [dump_action(action) for action in payload.actions]
    if "metadata" in fields:
        rule.rule_metadata = dump_metadata(payload.metadata)
        rule.priority = _priority(payload.metadata)
    if rule.trigger == "on_schedule" and not (rule.rule_metadata or {}).get("schedule"):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="on_schedule rules require metadata.schedule",
        )
    await session.commit()
    await session.refresh(rule)
    _sync_schedule(rule)
    return rule


async def delete_rule(session: AsyncSession, *, rule: AutomationRule) -> None:
    """Delete an automation rule."""
    rule_id = rule.id
    await session.delete(rule)
    await session.commit()
    schedule_registry.cancel_rule_schedule(rule_id)


async def list_runs(session: AsyncSession, *, rule_id: uuid.UUID, limit: int = 50) -> list[AutomationRun]:
    """Most recent runs first."""
    result = await session.execute(
        select(AutomationRun)
        .where(AutomationRun.rule_id == rule_id)
        .order_by(AutomationRun.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def run_rule(
    session: AsyncSession,
    *,
    rule: AutomationRule,
    requested_by: uuid.UUID,
    context: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Execute an automation rule now through the worker queue (inline when unavailable)."""
    rule_id = rule.id
    run_context = {"userId": str(requested_by), **(context or {})}

    async def _fallback() -> dict[str, Any]:
        return await automation_engine.run_rule(
            session,
            rule_id=rule_id,
            context=run_context,
            allow_disabled=True,
        )

    return await task_queue.enqueue_automation_run(
        rule_id=rule_id,
        context=run_context,
        requested_by=requested_by,
        allow_disabled=True,
        fallback=_fallback,
    )
