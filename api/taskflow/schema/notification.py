"""Notification schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from taskflow.schema.base import ORMModel


class NotificationRead(ORMModel):
    id: UUID
    type: str
    title: str
    message: str | None = None
    payload: dict[str, Any] | None = None
    read_at: datetime | None = None
    created_at: datetime
