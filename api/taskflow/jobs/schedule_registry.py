"""rq-scheduler registration for ``on_schedule`` automation rules."""

from __future__ import annotations

import logging
import uuid

from rq_scheduler import Scheduler
from sqlalchemy import select

from taskflow.core.config import settings
from taskflow.jobs import automations as automation_jobs
from taskflow.services.task_queue import AUTOMATION_QUEUE, task_queue

logger = logging.getLogger("taskflow.jobs.schedule_registry")

SCHEDULE_TRIGGER = "on_schedule"


def schedule_job_id(rule_id: uuid.UUID | str) -> str:
    return f"automation:schedule:{rule_id}"


def _scheduler() -> Scheduler | None:
    if settings.environment.lower() == "test" or not task_queue.connection:
        return None
    return Scheduler(connection=task_queue.connection, queue_name=task_queue.queue_for(AUTOMATION_QUEUE))


def register_rule_schedule(rule_id: uuid.UUID | str, cron: str) -> bool:
    """Replace any existing cron job for the rule with one for ``cron``."""
    scheduler = _scheduler()
    if scheduler is None:
        return False
    job_id = schedule_job_id(rule_id)
    if job_id in scheduler:
        scheduler.cancel(job_id)
    scheduler.cron(
        cron,
        func=automation_jobs.run_scheduled_rule_job,
        kwargs={"rule_id": str(rule_id)},
        id=job_id,
        queue_name=task_queue.queue_for(AUTOMATION_QUEUE),
        repeat=None,
        use_local_timezone=False,
    )
    logger.info("Scheduled automation rule %s (%s)", rule_id, cron)
    return True


def cancel_rule_schedule(rule_id: uuid.UUID | str) -> bool:
    scheduler = _scheduler()
    if scheduler is None:
        return False
    job_id = schedule_job_id(rule_id)
    if job_id not in scheduler:
        return False
    scheduler.cancel(job_id)
    logger.info("Cancelled schedule for automation rule %s", rule_id)
    return True


def sync_rule_schedule(
    *, rule_id: uuid.UUID | str, trigger: str, enabled: bool, schedule: str | None
) -> bool:
    """Make the scheduler match the rule: registered iff it is an enabled scheduled rule."""
    if trigger == SCHEDULE_TRIGGER and enabled and schedule:
        return register_rule_schedule(rule_id, schedule)
    return cancel_rule_schedule(rule_id)


async def ensure_schedules() -> int:
    """Idempotently register cron jobs for every enabled scheduled rule."""
    if _scheduler() is None:
        logger.info("Skipping scheduler bootstrap; queue connection is unavailable")
        return 0

    from taskflow.db.session import async_session
    from taskflow.models.automation import AutomationRule

    async with async_session() as session:
        result = await session.execute(
            select(AutomationRule).where(
                AutomationRule.trigger == SCHEDULE_TRIGGER,
                AutomationRule.enabled.is_(True),
            )
        )
        rules = result.scalars().all()
    registered = 0
    for rule in rules:
        schedule = (rule.rule_metadata or {}).get("schedule")
        if schedule and register_rule_schedule(rule.id, schedule):
            registered += 1
    return registered
