from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from entitlements import db, ratelimit
from entitlements.main import app
from entitlements.models import Plan


@pytest.fixture()
def client(tmp_path):
    database_url = f"sqlite:///{tmp_path}/test.db"
    db.reset_engine(database_url)
    db.init_db()

    with TestClient(app) as test_client:
        yield test_client


def create_org(client: TestClient, slug: str = "acme-inc", plan: str | None = None) -> dict:
    payload = {"name": "Acme Inc", "slug": slug}
    if plan is not None:
        payload["plan"] = plan
    response = client.post("/organizations", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_new_organization_starts_on_the_default_plan(client: TestClient) -> None:
    organization = create_org(client)
    assert organization["plan"] == "free"

    duplicate = client.post("/organizations", json={"name": "Acme Again", "slug": "acme-inc"})
    assert duplicate.status_code == 409

    unknown_plan = client.post("/organizations", json={"name": "Beta", "slug": "beta-co", "plan": "gold"})
    assert unknown_plan.status_code == 422

    missing = client.get("/organizations/nobody-here")
    assert missing.status_code == 404


def test_usage_summary_lists_plan_features(client: TestClient) -> None:
    create_org(client)

    response = client.get("/organizations/acme-inc/usage")
    assert response.status_code == 200
    body = response.json()
    assert body["plan"] == "free"
    assert list(body["features"]) == [
        "team_members",
        "workspaces",
        "connections_per_workspace",
        "api_rate_limit",
        "unique_visitors",
        "data_retention_days",
        "priority_support",
    ]
    assert body["features"]["team_members"]["limit"] == 5
    assert body["features"]["team_members"]["remaining"] == 5
    assert body["features"]["priority_support"]["has_feature"] is False
    assert body["features"]["priority_support"]["limit"] is None


def test_feature_check(client: TestClient) -> None:
    create_org(client, plan="pro-yearly")

    response = client.get("/organizations/acme-inc/features/workspaces", params={"amount": 10})
    assert response.status_code == 200
    body = response.json()
    assert body["limit"] == 10
    assert body["can_use"] is True

    too_many = client.get("/organizations/acme-inc/features/workspaces", params={"amount": 11})
    assert too_many.json()["can_use"] is False

    unknown = client.get("/organizations/acme-inc/features/teleportation")
    assert unknown.status_code == 404
    assert unknown.json()["detail"] == "Unknown feature."


def test_workspace_creation_is_gated_by_plan(client: TestClient) -> None:
    create_org(client)

    first = client.post("/organizations/acme-inc/workspaces", json={"name": "Main"})
    assert first.status_code == 201, first.text

    second = client.post("/organizations/acme-inc/workspaces", json={"name": "Second"})
    assert second.status_code == 403
    detail = second.json()["detail"]
    assert detail["error"] == "quota_exceeded"
    assert detail["feature"] == "workspaces"
    assert detail["limit"] == 1

    upgraded = client.put("/organizations/acme-inc/plan", json={"plan": "starter-yearly"})
    assert upgraded.status_code == 200
    assert upgraded.json()["plan"] == "starter-yearly"

    third = client.post("/organizations/acme-inc/workspaces", json={"name": "Second"})
    assert third.status_code == 201, third.text
    assert len(client.get("/organizations/acme-inc/workspaces").json()) == 2


def test_connections_and_workspace_deletion(client: TestClient) -> None:
    create_org(client)
    workspace = client.post("/organizations/acme-inc/workspaces", json={"name": "Main"}).json()
    base = f"/organizations/acme-inc/workspaces/{workspace['id']}"

    connection = client.post(f"{base}/connections", json={"provider": "stripe", "name": "Payments"})
    assert connection.status_code == 201, connection.text
    blocked = client.post(f"{base}/connections", json={"provider": "slack", "name": "Alerts"})
    assert blocked.status_code == 403

    removed = client.delete(f"{base}/connections/{connection.json()['id']}")
    assert removed.status_code == 204
    retried = client.post(f"{base}/connections", json={"provider": "slack", "name": "Alerts"})
    assert retried.status_code == 201, retried.text

    deleted = client.delete(base)
    assert deleted.status_code == 204
    summary = client.get("/organizations/acme-inc/usage").json()
    assert summary["features"]["workspaces"]["current"] == 0
    assert summary["features"]["connections_per_workspace"]["current"] == 0


def test_override_lifecycle(client: TestClient) -> None:
    create_org(client)

    granted = client.put(
        "/organizations/acme-inc/overrides/priority_support",
        json={"value": True, "reason": "launch partner"},
    )
    assert granted.status_code == 200, granted.text
    assert granted.json()["value"] == "true"

    check = client.get("/organizations/acme-inc/features/priority_support")
    assert check.json()["has_feature"] is True

    invalid = client.put("/organizations/acme-inc/overrides/team_members", json={"value": "lots"})
    assert invalid.status_code == 422
    not_a_flag = client.put("/organizations/acme-inc/overrides/priority_support", json={"value": 20})
    assert not_a_flag.status_code == 422

    cleared = client.delete("/organizations/acme-inc/overrides/priority_support")
    assert cleared.status_code == 204
    assert client.get("/organizations/acme-inc/features/priority_support").json()["has_feature"] is False

    missing = client.delete("/organizations/acme-inc/overrides/priority_support")
    assert missing.status_code == 404


def test_workspace_allocation(client: TestClient) -> None:
    create_org(client, plan="pro-yearly")
    workspace = client.post("/organizations/acme-inc/workspaces", json={"name": "Main"}).json()
    base = f"/organizations/acme-inc/workspaces/{workspace['id']}"

    allocation = client.put(f"{base}/allocations/connections_per_workspace", json={"allocated": 2})
    assert allocation.status_code == 200, allocation.text
    assert allocation.json()["allocated"] == 2

    check = client.get(
        "/organizations/acme-inc/features/connections_per_workspace",
        params={"workspace_id": workspace["id"]},
    )
    assert check.json()["limit"] == 2

    wrong_scope = client.put(f"{base}/allocations/team_members", json={"allocated": 2})
    assert wrong_scope.status_code == 422

    released = client.delete(f"{base}/allocations/connections_per_workspace")
    assert released.status_code == 204
    check = client.get(
        "/organizations/acme-inc/features/connections_per_workspace",
        params={"workspace_id": workspace["id"]},
    )
    assert check.json()["limit"] == 10

    again = client.delete(f"{base}/allocations/connections_per_workspace")
    assert again.status_code == 404
    unknown = client.delete(f"{base}/allocations/teleportation")
    assert unknown.status_code == 404


def test_rate_limit_header_follows_plan(client: TestClient) -> None:
    create_org(client)
    create_org(client, slug="big-corp", plan="business-yearly")

    assert client.get("/organizations/acme-inc").headers["X-RateLimit-Limit"] == "60"
    assert client.get("/organizations/big-corp").headers["X-RateLimit-Limit"] == "600"
    assert "X-RateLimit-Limit" not in client.get("/health").headers


def test_rate_limit_header_falls_back_without_an_active_plan(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_BASE_ATTEMPTS", "250")
    create_org(client)

    with db.session_scope() as session:
        session.scalar(select(Plan).where(Plan.slug == "free")).is_active = False

    response = client.get("/organizations/acme-inc")
    assert response.json()["plan"] is None
    assert response.headers["X-RateLimit-Limit"] == "250"


def test_rate_limit_lookup_runs_off_the_event_loop(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    create_org(client)
    calls: list[tuple[str, bool]] = []
    lookup = ratelimit.organization_rate_limit

    def recording_lookup(slug: str) -> int | None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            calls.append((slug, False))
        else:
            calls.append((slug, True))
        return lookup(slug)

    monkeypatch.setattr(ratelimit, "organization_rate_limit", recording_lookup)

    response = client.get("/organizations/acme-inc")
    assert response.headers["X-RateLimit-Limit"] == "60"
    assert calls == [("acme-inc", False)]

    missing = client.get("/organizations/nobody-here")
    assert missing.status_code == 404
    assert "X-RateLimit-Limit" not in missing.headers


def test_plan_revocation(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_BASE_ATTEMPTS", "250")
    create_org(client)

    upgraded = client.put(
        "/organizations/acme-inc/plan",
        json={"plan": "pro-yearly", "ends_at": "2999-01-01T00:00:00Z"},
    )
    assert upgraded.status_code == 200, upgraded.text
    assert upgraded.json()["plan"] == "pro-yearly"

    revoked = client.delete("/organizations/acme-inc/plans/pro-yearly")
    assert revoked.status_code == 200, revoked.text
    assert revoked.json()["plan"] is None
    assert revoked.headers["X-RateLimit-Limit"] == "250"

    again = client.delete("/organizations/acme-inc/plans/pro-yearly")
    assert again.status_code == 404
    unknown = client.delete("/organizations/acme-inc/plans/gold")
    assert unknown.status_code == 404
