"""Worker job entrypoints for automation rule execution."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from taskflow.db.session import async_session
from taskflow.schema.automation import TriggerKind
from taskflow.services import automation_engine

logger = logging.getLogger("taskflow.jobs.automations")


def run_automation_rule_job(
    *,
    rule_id: str,
    trigger: str | None = None,
    context: dict[str, Any] | None = None,
    requested_by: str | None = None,
    allow_disabled: bool = False,
) -> dict[str, Any]:
    """Execute an automation rule within a worker context."""

    async def _run() -> dict[str, Any]:
        run_context = dict(context or {})
        if requested_by:
            run_context.setdefault("userId", requested_by)
        async with async_session() as session:
            return await automation_engine.run_rule(
                session,
                rule_id=rule_id,
                trigger=trigger,
                context=run_context,
                allow_disabled=allow_disabled,
            )

    result = asyncio.run(_run())
    logger.info("Automation run complete for %s (%s)", rule_id, result.get("status"))
    return result


def run_scheduled_rule_job(*, rule_id: str) -> dict[str, Any]:
    """Cron entrypoint for ``on_schedule`` rules; disabled rules are skipped."""
    return run_automation_rule_job(rule_id=rule_id, trigger=TriggerKind.ON_SCHEDULE.value)
