"""API tests for automation rule lifecycle."""

from __future__ import annotations

import pytest

from taskflow.tests.utils import create_project, register_and_login


def _rule_payload(user_id: str, **overrides) -> dict:
    payload = {
        "name": "Notify on done",
        "description": "Tell the owner when work is finished",
        "enabled": True,
        "trigger": "on_status_change",
        "conditions": [{"field": "status", "operator": "equals", "value": "done"}],
        "actions": [
            {
                "type": "send_notification",
                "params": {"title": "Task completed", "message": "Nice work", "userId": user_id},
            }
        ],
        "metadata": {"priority": 5, "maxRuns": 10, "errorHandling": {"retryCount": 1, "retryDelay": 10}},
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_automation_rule_lifecycle(client):
    auth = await register_and_login(client, prefix="automation")
    project = await create_project(client)
    base = f"/api/projects/{project['id']}/automations"

    create_res = await client.post(base, json=_rule_payload(auth.user_id))
    assert create_res.status_code == 201
    rule = create_res.json()
    assert rule["trigger"] == "on_status_change"
    assert rule["priority"] == 5
    assert rule["metadata"]["maxRuns"] == 10
    assert rule["metadata"]["errorHandling"]["retryCount"] == 1
    assert rule["actions"][0]["params"]["userId"] == auth.user_id

    list_res = await client.get(base)
    assert list_res.status_code == 200
    assert [item["id"] for item in list_res.json()] == [rule["id"]]

    update_res = await client.patch(f"{base}/{rule['id']}", json={"enabled": False, "description": "Paused"})
    assert update_res.status_code == 200
    assert update_res.json()["enabled"] is False
    assert update_res.json()["description"] == "Paused"

    run_res = await client.post(f"{base}/{rule['id']}/run", json={"context": {"status": "done"}})
    assert run_res.status_code == 200
    run_payload = run_res.json()
    assert run_payload["status"] == "completed"
    assert run_payload["run_id"]
    assert run_payload["detail"]["actions"][0]["type"] == "send_notification"

    runs_res = await client.get(f"{base}/{rule['id']}/runs")
    assert runs_res.status_code == 200
    runs = runs_res.json()
    assert len(runs) == 1
    assert runs[0]["success"] is True
    assert runs[0]["context"]["userId"] == auth.user_id

    notifications = await client.get("/api/notifications")
    assert [item["title"] for item in notifications.json()] == ["Task completed"]

    delete_res = await client.delete(f"{base}/{rule['id']}")
    assert delete_res.status_code == 204
    assert (await client.get(base)).json() == []


@pytest.mark.asyncio
async def test_manual_run_reports_unmet_conditions(client):
    auth = await register_and_login(client, prefix="automation_skip")
    project = await create_project(client)
    base = f"/api/projects/{project['id']}/automations"
    rule = (await client.post(base, json=_rule_payload(auth.user_id))).json()

    run_res = await client.post(f"{base}/{rule['id']}/run", json={"context": {"status": "todo"}})

    assert run_res.status_code == 200
    assert run_res.json()["status"] == "skipped"
    assert run_res.json()["reason"] == "conditions_not_met"
    assert (await client.get(f"{base}/{rule['id']}/runs")).json() == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"trigger": "on_moon_phase"},
        {"conditions": [{"field": "status", "operator": "resembles", "value": "done"}]},
        {"actions": [{"type": "teleport", "params": {}}]},
        {"actions": [{"type": "send_email", "params": {"to": "not-an-email", "subject": "s", "body": "b"}}]},
        {"actions": [{"type": "trigger_webhook", "params": {"url": "ftp://example.com"}}]},
        {"trigger": "on_schedule", "metadata": {"priority": 1}},
    ],
)
async def test_invalid_rule_definitions_are_rejected(client, overrides):
    auth = await register_and_login(client, prefix="automation_invalid")
    project = await create_project(client)

    res = await client.post(f"/api/projects/{project['id']}/automations", json=_rule_payload(auth.user_id, **overrides))

    assert res.status_code == 422


@pytest.mark.asyncio
async def test_scheduled_rule_accepts_cron_metadata(client):
    auth = await register_and_login(client, prefix="automation_cron")
    project = await create_project(client)

    res = await client.post(
        f"/api/projects/{project['id']}/automations",
        json=_rule_payload(auth.user_id, trigger="on_schedule", conditions=[], metadata={"schedule": "0 9 * * 1"}),
    )

    assert res.status_code == 201
    assert res.json()["metadata"] == {"schedule": "0 9 * * 1"}


@pytest.mark.asyncio
async def test_rules_are_scoped_to_project_members(client):
    owner = await register_and_login(client, prefix="automation_owner")
    project = await create_project(client)
    rule = (
        await client.post(f"/api/projects/{project['id']}/automations", json=_rule_payload(owner.user_id))
    ).json()

    outsider = await register_and_login(client, prefix="automation_outsider")

    res = await client.get(f"/api/projects/{project['id']}/automations", headers=outsider.headers)
    assert res.status_code == 404
    res = await client.post(
        f"/api/projects/{project['id']}/automations/{rule['id']}/run", headers=outsider.headers
    )
    assert res.status_code == 404
