"""Import all models here for Alembic autogenerate."""

from taskflow.db.base_class import Base
from taskflow.models import (  # noqa: F401
    automation,
    notification,
    project,
    task,
    user,
)

__all__ = ["Base"]
