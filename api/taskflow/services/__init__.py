from . import (
    automation_service,
    notification_service,
    project_service,
    task_service,
    user_service,
)

__all__ = [
    "automation_service",
    "notification_service",
    "project_service",
    "task_service",
    "user_service",
]
"""Service-layer helpers for API operations."""
