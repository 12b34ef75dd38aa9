"""Automation rule processor: gating, condition checks, and action execution.

Invariants:
- Rules for one trigger run sequentially; one failing rule never blocks the next.
- A gated rule (cooldown, max runs, unmet conditions) records nothing.
- Every rule that reaches action execution, or fails while being processed,
  records exactly one ``AutomationRun``.
- Gating, execution and the run insert for a rule are serialized per process.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
import weakref
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, before_sleep_log, stop_after_attempt, wait_fixed

from taskflow.core.config import settings
from taskflow.models.automation import AutomationRule, AutomationRun
from taskflow.schema.automation import (
    AutomationAction,
    AutomationContext,
    Condition,
    ErrorHandling,
    RuleMetadata,
    TriggerKind,
    action_adapter,
    condition_adapter,
)
from taskflow.services import automation_actions
from taskflow.services.automation_conditions import conditions_met
from taskflow.utils.datetime import ensure_utc, utcnow
from taskflow.utils.redaction import redact_secrets

logger = logging.getLogger("taskflow.services.automation_engine")

ERROR_LIMIT = 500


class AutomationConfigError(ValueError):
    """Raised when a stored rule cannot be decoded into typed definitions."""


@dataclass(slots=True)
class StoredRule:
    """Plain snapshot of a rule row, safe to use after session rollbacks."""
    id: uuid.UUID
    name: str
    trigger: str
    conditions: Any
    actions: Any
    metadata: Any

    @classmethod
    def from_model(cls, rule: AutomationRule) -> "StoredRule":
        return cls(
            id=rule.id,
            name=rule.name,
            trigger=rule.trigger,
            conditions=rule.conditions,
            actions=rule.actions,
            metadata=rule.rule_metadata,
        )


@dataclass(slots=True)
class RuleDefinition:
    conditions: list[Condition]
    actions: list[AutomationAction]
    metadata: RuleMetadata
    conditions_valid: bool = True


@dataclass(slots=True)
class RuleOutcome:
    """Result of processing one rule for one trigger invocation."""
    rule_id: uuid.UUID
    status: str
    reason: str | None = None
    run_id: uuid.UUID | None = None
    ran_at: datetime = field(default_factory=utcnow)
    detail: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class _RuleLocks:
    """Per-rule asyncio locks, released for collection once no task holds them."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = weakref.WeakValueDictionary()

    def get(self, rule_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(rule_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[rule_id] = lock
        return lock


rule_locks = _RuleLocks()


def _truncate_error(value: str | None, limit: int = ERROR_LIMIT) -> str | None:
    if not value:
        return None
    return value[:limit]

    # The encoded document, not just the message, must fit ERROR_LIMIT.
def _serialize_error(exc: BaseException) -> str:
    # Shrink the message until the encoded document fits ERROR_LIMIT; escapes can grow it.
    error_type = exc.__class__.__name__
    message = redact_secrets(str(exc))[: ERROR_LIMIT // 2]
    encoded = json.dumps({"type": error_type, "message": message}, ensure_ascii=False)
    while len(encoded) > ERROR_LIMIT and message:
        message = message[: max(0, len(message) - (len(encoded) - ERROR_LIMIT))]
        encoded = json.dumps({"type": error_type, "message": message}, ensure_ascii=False)
    return encoded


def _as_list(raw: Any, label: str) -> list[Any]:
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise AutomationConfigError(f"{label}_not_json") from exc
    if not isinstance(raw, list):
        raise AutomationConfigError(f"{label}_not_a_list")
    return raw


def load_rule_definition(stored: StoredRule, *, strict: bool | None = None) -> RuleDefinition:
    """Decode stored JSON into typed conditions, actions, and metadata.

    Strict mode raises on any undecodable entry. Lenient mode marks the
    conditions unsatisfiable when a condition cannot be decoded and drops
    undecodable actions, logging a warning for each.
    """
    strict = settings.automation_strict_mode if strict is None else strict

    raw_metadata = stored.metadata
    if isinstance(raw_metadata, str):
        try:
            raw_metadata = json.loads(raw_metadata)
        except json.JSONDecodeError as exc:
            raise AutomationConfigError("metadata_not_json") from exc
    try:
        metadata = RuleMetadata.model_validate(raw_metadata or {})
    except ValidationError as exc:
        raise AutomationConfigError(f"metadata_invalid: {exc.errors()[0]['msg']}") from exc

    conditions: list[Condition] = []
    conditions_valid = True
    for index, raw in enumerate(_as_list(stored.conditions, "conditions")):
        try:
            conditions.append(condition_adapter.validate_python(raw))
        except ValidationError as exc:
            if strict:
                raise AutomationConfigError(f"condition_{index}_invalid: {exc.errors()[0]['msg']}") from exc
            logger.warning("Rule %s condition %d is not understood; rule conditions unmet", stored.id, index)
            conditions_valid = False

    actions: list[AutomationAction] = []
    for index, raw in enumerate(_as_list(stored.actions, "actions")):
        try:
            actions.append(action_adapter.validate_python(raw))
        except ValidationError as exc:
            if strict:
                raise AutomationConfigError(f"action_{index}_invalid: {exc.errors()[0]['msg']}") from exc
            logger.warning("Rule %s action %d is not understood; skipping it", stored.id, index)

    return RuleDefinition(
        conditions=conditions,
        actions=actions,
        metadata=metadata,
        conditions_valid=conditions_valid,
    )


async def _gate_reason(session: AsyncSession, rule_id: uuid.UUID, metadata: RuleMetadata) -> str | None:
    """Return why the rule may not run now, or None when it may."""
    if metadata.cooldown:
        result = await session.execute(
            select(AutomationRun.created_at)
            .where(AutomationRun.rule_id == rule_id)
            .order_by(AutomationRun.created_at.desc())
            .limit(1)
        )
        last_run_at = ensure_utc(result.scalar_one_or_none())
        if last_run_at and utcnow() - last_run_at < timedelta(seconds=metadata.cooldown):
            return "cooldown"
    if metadata.max_runs:
        run_count = await session.scalar(
            select(func.count()).select_from(AutomationRun).where(AutomationRun.rule_id == rule_id)
        )
        if (run_count or 0) >= metadata.max_runs:
            return "max_runs"
    return None


async def _attempt(
    session: AsyncSession, action: AutomationAction, context: AutomationContext
) -> dict[str, Any] | None:
    try:
        result = await automation_actions.execute_action(session, action, context)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return result


async def _run_fallback(
    session: AsyncSession,
    fallback: AutomationAction,
    context: AutomationContext,
    error: BaseException,
) -> dict[str, Any]:
    fallback_context = context.extend(error=_truncate_error(str(error)))
    try:
        result = await _attempt(session, fallback, fallback_context)
    except Exception as exc:
        logger.warning("Fallback action %s failed: %s", fallback.type, exc)
        return {"type": fallback.type, "status": "failed", "error": _truncate_error(str(exc))}
    return {"type": fallback.type, "status": "completed", "result": result}


async def _run_action(
    session: AsyncSession,
    action: AutomationAction,
    context: AutomationContext,
    handling: ErrorHandling,
) -> dict[str, Any]:
    """Run one action with the rule's retry policy, then its fallback if retries are exhausted."""
    delay_ms = handling.retry_delay
    if delay_ms is None:
        delay_ms = settings.automation_default_retry_delay_ms
    attempts = 0
    result: dict[str, Any] | None = None
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(handling.retry_count + 1),
            wait=wait_fixed(delay_ms / 1000),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                result = await _attempt(session, action, context)
    except Exception as exc:
        logger.warning("Action %s failed after %d attempt(s): %s", action.type, attempts, exc)
        entry: dict[str, Any] = {
            "type": action.type,
            "status": "failed",
            "attempts": attempts,
            "error": _truncate_error(str(exc)),
        }
        if handling.fallback_action is not None:
            entry["fallback"] = await _run_fallback(session, handling.fallback_action, context, exc)
        return entry
    return {"type": action.type, "status": "completed", "attempts": attempts, "result": result}


async def _record_run(
    session: AsyncSession,
    *,
    rule_id: uuid.UUID,
    trigger: str,
    context: AutomationContext,
    success: bool,
    error: str | None = None,
    detail: dict[str, Any] | None = None,
) -> AutomationRun:
    run = AutomationRun(
        rule_id=rule_id,
        trigger=trigger,
        context=context.snapshot(),
        success=success,
        error=error,
        detail=detail,
    )
    session.add(run)
    await session.commit()
    return run


async def process_rule(
    session: AsyncSession,
    stored: StoredRule,
    *,
    trigger: TriggerKind | str,
    context: AutomationContext,
) -> RuleOutcome:
    """Gate, evaluate, and execute a single rule, recording its run."""
    trigger_value = TriggerKind(trigger).value
    async with rule_locks.get(stored.id):
        try:
            definition = load_rule_definition(stored)
            reason = await _gate_reason(session, stored.id, definition.metadata)
            if reason:
                logger.debug("Rule %s skipped (%s)", stored.id, reason)
                return RuleOutcome(rule_id=stored.id, status="skipped", reason=reason)
            if not definition.conditions_valid or not conditions_met(definition.conditions, context):
                return RuleOutcome(rule_id=stored.id, status="skipped", reason="conditions_not_met")

            handling = definition.metadata.error_handling or ErrorHandling()
            action_context = context.extend(automationId=stored.id)
            results = [
                await _run_action(session, action, action_context, handling)
                for action in definition.actions
            ]
            detail = {"actions": results}
            run = await _record_run(
                session,
                rule_id=stored.id,
                trigger=trigger_value,
                context=context,
                success=True,
                detail=detail,
            )
            logger.info("Automation rule %s (%s) ran for %s", stored.id, stored.name, trigger_value)
            return RuleOutcome(rule_id=stored.id, status="completed", run_id=run.id, detail=detail)
        except Exception as exc:
            logger.exception("Error processing automation rule %s", stored.id)
            await session.rollback()
            error = _serialize_error(exc)
            outcome = RuleOutcome(rule_id=stored.id, status="failed", reason=error, detail={"error": error})
            try:
                run = await _record_run(
                    session,
                    rule_id=stored.id,
                    trigger=trigger_value,
                    context=context,
                    success=False,
                    error=error,
                )
            except Exception:
                logger.exception("Unable to record failed run for automation rule %s", stored.id)
                await session.rollback()
                return outcome
            outcome.run_id = run.id
            return outcome


def coerce_context(context: AutomationContext | dict[str, Any]) -> AutomationContext:
    if isinstance(context, AutomationContext):
        return context
    return AutomationContext.model_validate(context)


async def load_matching_rules(
    session: AsyncSession, *, project_id: uuid.UUID, trigger: TriggerKind
) -> list[StoredRule]:
    """Enabled rules for a project and trigger, highest priority first."""
    result = await session.execute(
        select(AutomationRule)
        .where(
            AutomationRule.project_id == project_id,
            AutomationRule.trigger == trigger.value,
            AutomationRule.enabled.is_(True),
        )
        .order_by(AutomationRule.priority.desc(), AutomationRule.name, AutomationRule.created_at)
    )
    return [StoredRule.from_model(rule) for rule in result.scalars().all()]


async def process_automation_rules(
    session: AsyncSession,
    trigger: TriggerKind | str,
    context: AutomationContext | dict[str, Any],
) -> list[RuleOutcome]:
    """Run every enabled rule of the context's project that listens to ``trigger``."""
    trigger_kind = TriggerKind(trigger)
    automation_context = coerce_context(context)
    rules = await load_matching_rules(session, project_id=automation_context.project_id, trigger=trigger_kind)
    outcomes: list[RuleOutcome] = []
    for stored in rules:
        outcomes.append(await process_rule(session, stored, trigger=trigger_kind, context=automation_context))
    if rules:
        completed = sum(1 for outcome in outcomes if outcome.status == "completed")
        logger.info(
            "Processed %d automation rule(s) for %s on project %s (%d ran)",
            len(rules),
            trigger_kind.value,
            automation_context.project_id,
            completed,
        )
    return outcomes


async def run_rule(
    session: AsyncSession,
    *,
    rule_id: uuid.UUID,
    context: dict[str, Any] | None = None,
    trigger: TriggerKind | str | None = None,
    allow_disabled: bool = False,
) -> dict[str, Any]:
    """Process one rule by ID for manual and scheduled runs."""
    if not isinstance(rule_id, uuid.UUID):
        rule_id = uuid.UUID(str(rule_id))
    rule = await session.get(AutomationRule, rule_id)
    if rule is None:
        return RuleOutcome(rule_id=rule_id, status="failed", reason="rule_not_found").as_dict()
    if not allow_disabled and not rule.enabled:
        return RuleOutcome(rule_id=rule_id, status="skipped", reason="rule_disabled").as_dict()
    stored = StoredRule.from_model(rule)
    merged = {"projectId": rule.project_id, **(context or {})}
    try:
        automation_context = coerce_context(merged)
    except ValidationError as exc:
        return RuleOutcome(
            rule_id=rule_id, status="failed", reason=f"context_invalid: {exc.errors()[0]['msg']}"
        ).as_dict()
    if automation_context.project_id != rule.project_id:
        return RuleOutcome(rule_id=rule_id, status="failed", reason="project_mismatch").as_dict()
    outcome = await process_rule(
        session,
        stored,
        trigger=trigger or stored.trigger,
        context=automation_context,
    )
    return outcome.as_dict()
