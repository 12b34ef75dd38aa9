"""SQLAlchemy ORM models for the Taskflow API."""

from taskflow.models.automation import AutomationRule, AutomationRun
from taskflow.models.notification import EmailMessage, EmailStatus, Notification
from taskflow.models.project import Project, ProjectMember
from taskflow.models.task import Checklist, ChecklistItem, Comment, Task, TaskDependency, TimeEntry
from taskflow.models.user import User

__all__ = [
    "AutomationRule",
    "AutomationRun",
    "Checklist",
    "ChecklistItem",
    "Comment",
    "EmailMessage",
    "EmailStatus",
    "Notification",
    "Project",
    "ProjectMember",
    "Task",
    "TaskDependency",
    "TimeEntry",
    "User",
]
