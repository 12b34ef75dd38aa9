"""Automation rule and run-history models for task lifecycle workflows."""

from __future__ import annotations

import typing
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from taskflow.db.base_class import Base

JSON_COMPATIBLE = JSON().with_variant(JSONB, "postgresql")

if typing.TYPE_CHECKING:  # pragma: no cover
    from taskflow.models.project import Project


class AutomationRule(Base):
    """Project-scoped rule: a trigger, AND-combined conditions, and ordered actions.

    ``conditions``, ``actions`` and ``rule_metadata`` hold the rule-editor JSON
    verbatim; they are decoded into typed models each time the rule runs.
    """

    __tablename__ = "automation_rules"
    __table_args__ = (Index("ix_automation_rules_project_trigger", "project_id", "trigger"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    trigger: Mapped[str] = mapped_column(String(64), nullable=False)
    conditions: Mapped[list] = mapped_column(JSON_COMPATIBLE, default=list, nullable=False)
    actions: Mapped[list] = mapped_column(JSON_COMPATIBLE, default=list, nullable=False)
    rule_metadata: Mapped[dict | None] = mapped_column("metadata", JSON_COMPATIBLE)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_by_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    project: Mapped["Project"] = relationship(back_populates="automation_rules")
    runs: Mapped[list["AutomationRun"]] = relationship(
        back_populates="rule", cascade="all, delete-orphan", passive_deletes=True
    )


class AutomationRun(Base):
    """Immutable audit row for one processing attempt of a rule."""

    __tablename__ = "automation_runs"
    __table_args__ = (Index("ix_automation_runs_rule_created", "rule_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False
    )
    trigger: Mapped[str] = mapped_column(String(64), nullable=False)
    context: Mapped[dict | None] = mapped_column(JSON_COMPATIBLE)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    detail: Mapped[dict | None] = mapped_column(JSON_COMPATIBLE)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    rule: Mapped["AutomationRule"] = relationship(back_populates="runs")
