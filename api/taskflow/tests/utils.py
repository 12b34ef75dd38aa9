"""Shared helpers for API and engine tests."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.models.automation import AutomationRule
from taskflow.models.project import Project, ProjectMember
from taskflow.models.task import Task
from taskflow.models.user import User


@dataclass(slots=True)
class AuthContext:
    """Authenticated client context for API tests."""

    client: AsyncClient
    user: dict[str, Any]
    email: str
    password: str
    token: str

    @property
    def user_id(self) -> str:
        return str(self.user["id"])

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


async def register_and_login(client: AsyncClient, *, prefix: str = "user") -> AuthContext:
    """Register and log in a new user, returning the auth context."""
    suffix = uuid.uuid4().hex[:8]
    email = f"{prefix}_{suffix}@example.com"
    password = "supersecret123"
    creds = {"email": email, "password": password, "display_name": f"{prefix.title()} {suffix}"}

    register_res = await client.post("/api/auth/register", json=creds)
    assert register_res.status_code == 200
    user = register_res.json()["user"]

    login_res = await client.post("/api/auth/login", json={"email": email, "password": password})
    assert login_res.status_code == 200

    return AuthContext(
        client=client,
        user=user,
        email=email,
        password=password,
        token=login_res.json()["access_token"],
    )


async def create_project(client: AsyncClient, *, name: str = "Launch plan") -> dict[str, Any]:
    res = await client.post("/api/projects", json={"name": name})
    assert res.status_code == 201
    return res.json()


async def add_rule(
    session: AsyncSession,
    *,
    project_id: uuid.UUID,
    trigger: str = "on_status_change",
    conditions: list[dict[str, Any]] | None = None,
    actions: list[dict[str, Any]] | None = None,
    metadata: dict[str, Any] | None = None,
    enabled: bool = True,
    name: str = "rule",
    priority: int = 0,
) -> uuid.UUID:
    """Insert a rule row with raw stored JSON and return its ID."""
    rule = AutomationRule(
        project_id=project_id,
        name=name,
        enabled=enabled,
        trigger=trigger,
        conditions=conditions or [],
        actions=actions or [],
        rule_metadata=metadata,
        priority=priority,
    )
    session.add(rule)
    await session.commit()
    return rule.id


async def seed_workspace(session: AsyncSession) -> dict[str, uuid.UUID]:
    """Commit a user, project, membership, and task; return their IDs."""
    user = User(email=f"owner_{uuid.uuid4().hex[:8]}@example.com", hashed_password="x", display_name="Owner")
    session.add(user)
    await session.flush()
    project = Project(owner_id=user.id, name="Launch", slug=f"launch-{uuid.uuid4().hex[:6]}")
    session.add(project)
    await session.flush()
    session.add(ProjectMember(project_id=project.id, user_id=user.id, role="owner"))
    task = Task(project_id=project.id, title="Write release notes", status="todo", created_by_id=user.id)
    session.add(task)
    await session.commit()
    return {"user_id": user.id, "project_id": project.id, "task_id": task.id}
