"""Automation rule endpoints, scoped to a project."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.api.deps import get_current_user, get_db, get_member_project
from taskflow.models.project import Project
from taskflow.models.user import User
from taskflow.schema.automation import (
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    AutomationRunRead,
    AutomationRunRequest,
    AutomationRunResponse,
)
from taskflow.services import automation_service

router = APIRouter()


@router.get("", response_model=list[AutomationRuleRead])
async def list_automation_rules(
    project: Project = Depends(get_member_project),
    session: AsyncSession = Depends(get_db),
) -> list[AutomationRuleRead]:
    """List automation rules for the project."""
    rules = await automation_service.list_rules(session, project_id=project.id)
    return [AutomationRuleRead.model_validate(rule) for rule in rules]


@router.post("", response_model=AutomationRuleRead, status_code=status.HTTP_201_CREATED)
async def create_automation_rule(
    payload: AutomationRuleCreate,
    project: Project = Depends(get_member_project),
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> AutomationRuleRead:
    """Create a new automation rule."""
    rule = await automation_service.create_rule(
        session, project_id=project.id, user_id=current_user.id, payload=payload
    )
    return AutomationRuleRead.model_validate(rule)


@router.patch("/{rule_id}", response_model=AutomationRuleRead)
async def update_automation_rule(
    rule_id: uuid.UUID,
    payload: AutomationRuleUpdate,
    project: Project = Depends(get_member_project),
    session: AsyncSession = Depends(get_db),
) -> AutomationRuleRead:
    """Update an automation rule."""
    rule = await automation_service.get_rule(session, project_id=project.id, rule_id=rule_id)
    rule = await automation_service.update_rule(session, rule=rule, payload=payload)
    return AutomationRuleRead.model_validate(rule)


@router.delete(
    "/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    response_model=None,
)
async def delete_automation_rule(
    rule_id: uuid.UUID,
    project: Project = Depends(get_member_project),
    session: AsyncSession = Depends(get_db),
) -> None:
    """Delete an automation rule."""
    rule = await automation_service.get_rule(session, project_id=project.id, rule_id=rule_id)
    await automation_service.delete_rule(session, rule=rule)


@router.post("/{rule_id}/run", response_model=AutomationRunResponse)
async def run_automation_rule(
    rule_id: uuid.UUID,
    payload: AutomationRunRequest | None = None,
    project: Project = Depends(get_member_project),
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> AutomationRunResponse:
    """Trigger an automation rule immediately."""
    rule = await automation_service.get_rule(session, project_id=project.id, rule_id=rule_id)
    result = await automation_service.run_rule(
        session,
        rule=rule,
        requested_by=current_user.id,
        context=payload.context if payload else None,
    )
    return AutomationRunResponse.model_validate(result)


@router.get("/{rule_id}/runs", response_model=list[AutomationRunRead])
async def list_automation_runs(
    rule_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    project: Project = Depends(get_member_project),
    session: AsyncSession = Depends(get_db),
) -> list[AutomationRunRead]:
    """Run history, newest first."""
    rule = await automation_service.get_rule(session, project_id=project.id, rule_id=rule_id)
    runs = await automation_service.list_runs(session, rule_id=rule.id, limit=limit)
    return [AutomationRunRead.model_validate(run) for run in runs]
