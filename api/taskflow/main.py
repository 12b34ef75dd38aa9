"""FastAPI application entrypoint and health reporting.

Invariants:
- Queue detail is only exposed to authenticated users.
"""

import logging
from typing import Any

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskflow.api.deps import get_optional_current_user
from taskflow.api.router import api_router
from taskflow.core.config import settings
from taskflow.jobs.schedule_registry import ensure_schedules
from taskflow.models.user import User
from taskflow.services.task_queue import task_queue

LOG_FORMAT = "%(asctime)s %(name)s [%(levelname)s] %(message)s"

logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
logger = logging.getLogger("taskflow.main")

app = FastAPI(title=settings.app_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router, prefix=settings.api_prefix)


@app.on_event("startup")
async def _register_schedules() -> None:
    """Register cron jobs for scheduled automation rules on startup."""
    registered = await ensure_schedules()
    if registered:
        logger.info("Registered %d scheduled automation rule(s)", registered)


@app.get("/health", tags=["internal"])
@app.get(f"{settings.api_prefix}/health", tags=["internal"])
async def health(current_user: User | None = Depends(get_optional_current_user)) -> dict[str, Any]:
    """Return health status and, for signed-in callers, task queue state."""
    if current_user is None:
        return {"status": "ok"}
    queue = task_queue.snapshot()
    status = "ok" if queue["status"] in {"online", "offline"} else "degraded"
    return {"status": status, "queue": queue}
