"""RQ task queue wrapper with inline fallback for local/test runs."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry
from rq.registry import FailedJobRegistry, ScheduledJobRegistry, StartedJobRegistry
from rq.worker import Worker

from taskflow.core.config import settings
from taskflow.utils.datetime import utcnow
from taskflow.utils.redaction import redact_secrets

logger = logging.getLogger("taskflow.services.task_queue")

# Automation jobs record their own failures; one quick retry covers worker hiccups.
DEFAULT_RETRY = Retry(max=1, interval=[5])
AUTOMATION_QUEUE = "automations"


def _maybe_async(value: Any) -> Any:
    """Normalize callables/coroutines into an awaitable result."""
    if asyncio.iscoroutine(value):
        return value
    if callable(value):
        return value()
    return value


class TaskQueue:
    """Thin wrapper around RQ that can fall back to inline execution."""

    def __init__(self) -> None:
        self.queue_names: list[str] = settings.worker_queue_names or ["default"]
        self._connection: Redis | None = None
        self._enabled = False
        self._bootstrap()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def connection(self) -> Redis | None:
        return self._connection

    def _bootstrap(self) -> None:
        """Initialize Redis connectivity unless disabled for tests."""
        if settings.environment.lower() == "test":
            logger.info("Task queue disabled in test environment")
            return
        try:
            connection = Redis.from_url(settings.redis_url)
            connection.ping()
        except (RedisError, OSError) as exc:  # pragma: no cover - network/redis specific
            logger.warning("Redis unavailable; running jobs inline: %s", redact_secrets(str(exc)))
            return
        self._connection = connection
        self._enabled = True
        logger.info("Task queue ready (queues: %s)", ", ".join(self.queue_names))

    def queue_for(self, preferred: str) -> str:
        """Return ``preferred`` when a worker listens on it, else the first configured queue."""
        if preferred in self.queue_names:
            return preferred
        return self.queue_names[0] if self.queue_names else "default"

    def get_queue(self, queue_name: str | None = None) -> Queue:
        """Return a configured queue instance for enqueuing jobs."""
        if not self._connection:
            raise RuntimeError("Queue connection not initialized")
        return Queue(queue_name or self.queue_for("default"), connection=self._connection)

    async def enqueue_automation_run(
        self,
        *,
        rule_id: uuid.UUID,
        trigger: str | None = None,
        context: dict[str, Any] | None = None,
        requested_by: uuid.UUID | None = None,
        allow_disabled: bool = False,
        fallback: Callable[[], Any] | None = None,
    ) -> Any:
        """Run one automation rule on the automation queue and wait for its outcome."""
        from taskflow.jobs.automations import run_automation_rule_job

        return await self.enqueue_or_run(
            run_automation_rule_job,
            fallback=fallback,
            queue_name=self.queue_for(AUTOMATION_QUEUE),
            timeout_seconds=settings.automation_queue_timeout_seconds,
            description=f"automation:{rule_id}",
            rule_id=str(rule_id),
            trigger=trigger,
            context=context or {},
            requested_by=str(requested_by) if requested_by else None,
            allow_disabled=allow_disabled,
        )

    async def enqueue_or_run(
        self,
        func: Callable[..., Any],
        *,
        fallback: Callable[[], Any] | None = None,
        queue_name: str | None = None,
        timeout_seconds: int = 60,
        retry: Retry | None = DEFAULT_RETRY,
        description: str | None = None,
        **kwargs: Any,
    ) -> Any:
        """Enqueue a job and wait for the result; fall back to inline execution if needed."""

        async def _run_fallback() -> Any:
            target = fallback or (lambda: func(**kwargs))
            result = _maybe_async(target)
            if asyncio.iscoroutine(result):
                return await result
            return result

        if not self._enabled or not self._connection:
            return await _run_fallback()

        def _enqueue_and_wait() -> Any:
            queue = self.get_queue(queue_name)
            job = queue.enqueue(
                func,
                kwargs=kwargs,
                job_timeout=timeout_seconds,
                description=description,
                retry=retry,
            )
            return job.wait(timeout=timeout_seconds)  # type: ignore[attr-defined]

        try:
            return await asyncio.to_thread(_enqueue_and_wait)
        except Exception as exc:  # pragma: no cover - network/redis specific
            logger.warning("Falling back to inline execution after queue failure: %s", exc)
            return await _run_fallback()

    def snapshot(self) -> dict[str, Any]:
        """Return a diagnostic snapshot of queue and worker state."""
        if not self._connection:
            return {"status": "offline", "queues": [], "workers": []}

        queues: list[dict[str, Any]] = []
        workers: list[dict[str, Any]] = []
        try:
            for name in self.queue_names:
                queue = Queue(name, connection=self._connection)
                queues.append(
                    {
                        "name": name,
                        "size": queue.count,
                        "scheduled": len(ScheduledJobRegistry(queue=queue)),
                        "started": len(StartedJobRegistry(queue=queue)),
                        "failed": len(FailedJobRegistry(queue=queue)),
                    }
                )
            for worker in Worker.all(connection=self._connection):
                workers.append({"name": worker.name, "queues": list(worker.queue_names())})
        except RedisError as exc:  # pragma: no cover - network/redis specific
            logger.warning("Unable to inspect task queue: %s", exc)
            return {"status": "degraded", "queues": queues, "workers": workers, "error": str(exc)}

        return {
            "status": "online" if workers else "degraded",
            "queues": queues,
            "workers": workers,
            "checked_at": utcnow().isoformat(),
        }


task_queue = TaskQueue()
