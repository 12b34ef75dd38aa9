"""Automation rule schemas shared by the API and the rule engine.

Invariants:
- Rule definitions use the rule-editor JSON shape (camelCase inside params and
  metadata); Python attributes stay snake_case via alias generation.
- Actions form a tagged union on ``type``; every ``ActionKind`` has exactly one
  variant with its own params model.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from taskflow.schema.base import ORMModel


class TriggerKind(str, enum.Enum):
    """Task lifecycle events that activate rule matching."""
    ON_CREATE = "on_create"
    ON_STATUS_CHANGE = "on_status_change"
    ON_ASSIGNEE_CHANGE = "on_assignee_change"
    ON_DUE_DATE_CHANGE = "on_due_date_change"
    ON_PRIORITY_CHANGE = "on_priority_change"
    ON_CUSTOM_FIELD_CHANGE = "on_custom_field_change"
    ON_COMMENT = "on_comment"
    ON_ATTACHMENT = "on_attachment"
    ON_DEPENDENCY_CHANGE = "on_dependency_change"
    ON_TIME_TRACKED = "on_time_tracked"
    ON_SCHEDULE = "on_schedule"


class ConditionOperator(str, enum.Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    CHANGED_TO = "changed_to"
    CHANGED_FROM = "changed_from"
    WAS_CHANGED = "was_changed"
    WAS_NOT_CHANGED = "was_not_changed"


class ActionKind(str, enum.Enum):
    UPDATE_FIELD = "update_field"
    SEND_NOTIFICATION = "send_notification"
    CREATE_TASK = "create_task"
    UPDATE_STATUS = "update_status"
    ASSIGN_USER = "assign_user"
    ADD_COMMENT = "add_comment"
    ADD_CHECKLIST = "add_checklist"
    ADD_DEPENDENCY = "add_dependency"
    TRIGGER_WEBHOOK = "trigger_webhook"
    SEND_EMAIL = "send_email"
    START_TIME_TRACKING = "start_time_tracking"
    STOP_TIME_TRACKING = "stop_time_tracking"


class CamelModel(BaseModel):
    """Base for rule-editor payloads: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ActionParams(CamelModel):
    """Params base; unknown keys are kept so editor round-trips stay lossless."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class Condition(CamelModel):
    """Boolean predicate over the runtime context."""
    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: Any = None


class UpdateFieldParams(ActionParams):
    field: str = Field(min_length=1)
    value: Any = None


class SendNotificationParams(ActionParams):
    title: str
    message: str | None = None
    user_id: uuid.UUID


class CreateTaskParams(ActionParams):
    title: str
    description: str | None = None
    status: str | None = Field(default=None, validation_alias=AliasChoices("status", "statusId"))
    assignee_id: uuid.UUID | None = None
    priority: str | None = None
    due_date: datetime | None = None
    custom_fields: dict[str, Any] | None = None


class UpdateStatusParams(ActionParams):
    status: str = Field(validation_alias=AliasChoices("status", "statusId"))


class AssignUserParams(ActionParams):
    user_id: uuid.UUID


class AddCommentParams(ActionParams):
    content: str = Field(min_length=1)


class ChecklistItemParams(CamelModel):
    content: str
    completed: bool = False


class AddChecklistParams(ActionParams):
    name: str
    items: list[ChecklistItemParams] = Field(default_factory=list)


class AddDependencyParams(ActionParams):
    dependency_task_id: uuid.UUID
    type: str = "blocks"


class TriggerWebhookParams(ActionParams):
    url: str
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    payload: dict[str, Any] | None = None

    @field_validator("url")
    @classmethod
    def _require_http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("webhook url must be http(s)")
        return value


class SendEmailParams(ActionParams):
    to: EmailStr
    subject: str
    body: str


class StartTimeTrackingParams(ActionParams):
    user_id: uuid.UUID | None = None
    description: str | None = None
    billable: bool = False


class StopTimeTrackingParams(ActionParams):
    user_id: uuid.UUID | None = None


class UpdateFieldAction(CamelModel):
    type: Literal["update_field"]
    params: UpdateFieldParams


class SendNotificationAction(CamelModel):
    type: Literal["send_notification"]
    params: SendNotificationParams


class CreateTaskAction(CamelModel):
    type: Literal["create_task"]
    params: CreateTaskParams


class UpdateStatusAction(CamelModel):
    type: Literal["update_status"]
    params: UpdateStatusParams


class AssignUserAction(CamelModel):
    type: Literal["assign_user"]
    params: AssignUserParams


class AddCommentAction(CamelModel):
    type: Literal["add_comment"]
    params: AddCommentParams


class AddChecklistAction(CamelModel):
    type: Literal["add_checklist"]
    params: AddChecklistParams


class AddDependencyAction(CamelModel):
    type: Literal["add_dependency"]
    params: AddDependencyParams


class TriggerWebhookAction(CamelModel):
    type: Literal["trigger_webhook"]
    params: TriggerWebhookParams


class SendEmailAction(CamelModel):
    type: Literal["send_email"]
    params: SendEmailParams


class StartTimeTrackingAction(CamelModel):
    type: Literal["start_time_tracking"]
    params: StartTimeTrackingParams = Field(default_factory=StartTimeTrackingParams)


class StopTimeTrackingAction(CamelModel):
    type: Literal["stop_time_tracking"]
    params: StopTimeTrackingParams = Field(default_factory=StopTimeTrackingParams)


AutomationAction = Annotated[
    Union[
        UpdateFieldAction,
        SendNotificationAction,
        CreateTaskAction,
        UpdateStatusAction,
        AssignUserAction,
        AddCommentAction,
        AddChecklistAction,
        AddDependencyAction,
        TriggerWebhookAction,
        SendEmailAction,
        StartTimeTrackingAction,
        StopTimeTrackingAction,
    ],
    Field(discriminator="type"),
]

action_adapter: TypeAdapter[AutomationAction] = TypeAdapter(AutomationAction)
condition_adapter: TypeAdapter[Condition] = TypeAdapter(Condition)


class ErrorHandling(CamelModel):
    retry_count: int = Field(default=0, ge=0)
    # Milliseconds between attempts; None falls back to the configured default.
    retry_delay: float | None = Field(default=None, ge=0)
    fallback_action: AutomationAction | None = None


class RuleMetadata(CamelModel):
    """Scheduling, gating, and error-handling knobs for a rule."""
    schedule: str | None = None
    priority: int | None = None
    max_runs: int | None = Field(default=None, ge=0)
    # Seconds; the editor has shipped both spellings.
    cooldown: float | None = Field(
        default=None, ge=0, validation_alias=AliasChoices("cooldown", "cooldownSeconds")
    )
    error_handling: ErrorHandling | None = None


class FieldChange(BaseModel):
    old: Any = None
    new: Any = None


class AutomationContext(BaseModel):
    """Runtime values a rule is evaluated against.

    Typed keys cover what every caller provides; task snapshot values
    (``status``, ``priority``, ``assignee``, ``dueDate``...) and fallback
    ``error`` strings ride along as extra keys.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    project_id: uuid.UUID = Field(alias="projectId")
    task_id: uuid.UUID | None = Field(default=None, alias="taskId")
    user_id: uuid.UUID | None = Field(default=None, alias="userId")
    automation_id: uuid.UUID | None = Field(default=None, alias="automationId")
    changes: dict[str, FieldChange] = Field(default_factory=dict, alias="_changes")

    def value_of(self, field: str) -> Any:
        """Resolve a condition field against extras first, then typed keys."""
        extra = self.model_extra or {}
        if field in extra:
            return extra[field]
        name = _CONTEXT_ALIASES.get(field, field)
        if name in type(self).model_fields and name != "changes":
            value = getattr(self, name)
            return str(value) if isinstance(value, uuid.UUID) else value
        return None

    def extend(self, **values: Any) -> "AutomationContext":
        """Return a copy with additional keys (aliases or extras) merged in."""
        merged = self.model_dump(by_alias=True)
        merged.update(values)
        return AutomationContext.model_validate(merged)

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe dump used for run records and webhook bodies."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


_CONTEXT_ALIASES = {
    field.alias: name for name, field in AutomationContext.model_fields.items() if field.alias
}


def dump_action(action: AutomationAction) -> dict[str, Any]:
    return action.model_dump(mode="json", by_alias=True, exclude_none=True)


def dump_condition(condition: Condition) -> dict[str, Any]:
    return condition.model_dump(mode="json", by_alias=True)


def dump_metadata(metadata: RuleMetadata | None) -> dict[str, Any] | None:
    if metadata is None:
        return None
    return metadata.model_dump(mode="json", by_alias=True, exclude_none=True)


class AutomationRuleCreate(BaseModel):
    """Payload for creating an automation rule."""
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=500)
    enabled: bool = True
    trigger: TriggerKind
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[AutomationAction] = Field(default_factory=list)
    metadata: RuleMetadata | None = None

    @model_validator(mode="after")
    def _require_schedule_for_scheduled_rules(self) -> "AutomationRuleCreate":
        if self.trigger == TriggerKind.ON_SCHEDULE and not (self.metadata and self.metadata.schedule):
            raise ValueError("on_schedule rules require metadata.schedule")
        return self


class AutomationRuleUpdate(BaseModel):
    """Payload for updating an automation rule."""
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=500)
    enabled: bool | None = None
    trigger: TriggerKind | None = None
    conditions: list[Condition] | None = None
    actions: list[AutomationAction] | None = None
    metadata: RuleMetadata | None = None


class AutomationRuleRead(ORMModel):
    """Automation rule representation."""
    id: uuid.UUID
    project_id: uuid.UUID
    name: str
    description: str | None = None
    enabled: bool
    trigger: str
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    metadata: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("rule_metadata", "metadata")
    )
    priority: int
    created_at: datetime
    updated_at: datetime


class AutomationRunRead(ORMModel):
    """Run-history row."""
    id: uuid.UUID
    rule_id: uuid.UUID
    trigger: str
    context: dict[str, Any] | None = None
    success: bool
    error: str | None = None
    detail: dict[str, Any] | None = None
    created_at: datetime


class AutomationRunRequest(BaseModel):
    """Optional context overrides for a manual rule run."""
    context: dict[str, Any] = Field(default_factory=dict)


class AutomationRunResponse(BaseModel):
    """Automation rule execution summary."""
    rule_id: uuid.UUID
    status: str
    reason: str | None = None
    run_id: uuid.UUID | None = None
    ran_at: datetime
    detail: dict[str, Any] | None = None
