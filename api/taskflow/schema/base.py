"""Shared schema base classes for API responses."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class ORMModel(BaseModel):
    """Response model populated straight from SQLAlchemy rows."""

    model_config = ConfigDict(from_attributes=True)


class Timestamped(ORMModel):
    """Identifier plus creation/update timestamps common to mutable resources."""
    id: UUID
    created_at: datetime
    updated_at: datetime
