"""API tests for the admin console: login, RBAC, subscriptions and billing triggers."""

from __future__ import annotations

import functools
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from config.settings import Settings
from src.api.main import create_app
from src.core.types import AdminRole
from src.store.memory import MemoryStore


@pytest.fixture()
def client(settings: Settings) -> Iterator[TestClient]:
    app = create_app(settings, MemoryStore(), bcrypt_rounds=4)
    with TestClient(app) as test_client:
        yield test_client


def _seed(client: TestClient, login_id: str, role: AdminRole) -> None:
    admins = client.app.state.services.admins
    client.portal.call(
        functools.partial(
            admins.create_admin,
            login_id,
            "password1",
            login_id.title(),
            role,
            allow_owner=role is AdminRole.OWNER,
        )
    )


def _login(client: TestClient, login_id: str, role: AdminRole) -> dict:
    _seed(client, login_id, role)
    response = client.post(
        "/api/admin/auth/login", json={"loginId": login_id, "password": "password1"}
    )
    assert response.status_code == 200
    return response.json()


class TestAdminAuth:
    def test_owner_login_grants_everything(self, client: TestClient) -> None:
        me = _login(client, "boss", AdminRole.OWNER)
        assert me["role"] == "owner"
        assert "settings:write" in me["permissions"]

        current = client.get("/api/admin/auth/me")
        assert current.status_code == 200
        assert current.json()["loginId"] == "boss"

    def test_viewer_permissions_follow_role_table(self, client: TestClient) -> None:
        me = _login(client, "watcher", AdminRole.VIEWER)
        assert "subscriptions:read" in me["permissions"]
        assert "subscriptions:write" not in me["permissions"]

    def test_wrong_password(self, client: TestClient) -> None:
        _seed(client, "boss", AdminRole.OWNER)
        response = client.post(
            "/api/admin/auth/login", json={"loginId": "boss", "password": "nope"}
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid login id or password"

    def test_me_requires_session(self, client: TestClient) -> None:
        assert client.get("/api/admin/auth/me").status_code == 401

    def test_logout(self, client: TestClient) -> None:
        _login(client, "boss", AdminRole.OWNER)
        client.post("/api/admin/auth/logout")
        assert client.get("/api/admin/auth/me").status_code == 401


class TestAdminAccounts:
    def test_viewer_cannot_list_admins(self, client: TestClient) -> None:
        _login(client, "watcher", AdminRole.VIEWER)
        assert client.get("/api/admin/admins").status_code == 403

    def test_owner_manages_admins(self, client: TestClient) -> None:
        _login(client, "boss", AdminRole.OWNER)
        created = client.post(
            "/api/admin/admins",
            json={"loginId": "helper", "password": "password1", "name": "Helper", "role": "admin"},
        )
        assert created.status_code == 201
        admin_id = created.json()["id"]

        promoted = client.patch(f"/api/admin/admins/{admin_id}/role", json={"role": "super"})
        assert promoted.json()["role"] == "super"

        assert client.delete(f"/api/admin/admins/{admin_id}").status_code == 204
        assert [a["loginId"] for a in client.get("/api/admin/admins").json()] == ["boss"]

    def test_owner_role_cannot_be_assigned(self, client: TestClient) -> None:
        _login(client, "boss", AdminRole.OWNER)
        response = client.post(
            "/api/admin/admins",
            json={"loginId": "usurper", "password": "password1", "name": "U", "role": "owner"},
        )
        assert response.status_code == 409

    def test_role_permission_overlay(self, client: TestClient) -> None:
        _login(client, "boss", AdminRole.OWNER)
        saved = client.put(
            "/api/admin/permissions",
            json={"permissions": {"viewer": ["dashboard:read", "made:up"], "owner": ["x"]}},
        )
        assert saved.status_code == 200
        assert saved.json()["permissions"]["viewer"] == ["dashboard:read"]
        assert "owner" not in saved.json()["permissions"]


class TestSubscriptionsApi:
    def test_start_and_read(self, client: TestClient) -> None:
        _login(client, "boss", AdminRole.OWNER)
        started = client.post("/api/admin/subscriptions/t1/start", json={"plan": "basic"})
        assert started.status_code == 200
        body = started.json()
        assert body["changed"] is True
        assert body["changeType"] == "new"
        assert body["subscription"]["status"] == "active"

        current = client.get("/api/admin/subscriptions/t1")
        assert current.json()["plan"] == "basic"

    def test_duplicate_start_conflicts(self, client: TestClient) -> None:
        _login(client, "boss", AdminRole.OWNER)
        client.post("/api/admin/subscriptions/t1/start", json={"plan": "basic"})
        duplicate = client.post("/api/admin/subscriptions/t1/start", json={"plan": "basic"})
        assert duplicate.status_code == 409
        assert duplicate.json()["transition"] == "start"
        assert duplicate.json()["currentStatus"] == "active"

    def test_missing_subscription(self, client: TestClient) -> None:
        _login(client, "boss", AdminRole.OWNER)
        assert client.get("/api/admin/subscriptions/ghost").status_code == 404

    def test_viewer_reads_but_cannot_write(self, client: TestClient) -> None:
        _login(client, "watcher", AdminRole.VIEWER)
        assert client.get("/api/admin/subscriptions/ghost").status_code == 404
        response = client.post("/api/admin/subscriptions/t1/start", json={"plan": "basic"})
        assert response.status_code == 403

    def test_history_lists_transitions(self, client: TestClient) -> None:
        _login(client, "boss", AdminRole.OWNER)
        client.post("/api/admin/subscriptions/t1/start", json={"plan": "basic"})
        client.post(
            "/api/admin/subscriptions/t1/change-plan",
            json={"newPlan": "business", "mode": "reserve", "reason": "customer asked"},
        )

        history = client.get("/api/admin/subscriptions/t1/history").json()
        assert [h["changeType"] for h in history] == ["new", "reserve"]
        assert history[1]["note"] == "boss: customer asked"

    def test_invalid_body_is_bad_request(self, client: TestClient) -> None:
        _login(client, "boss", AdminRole.OWNER)
        response = client.post(
            "/api/admin/subscriptions/t1/change-plan", json={"newPlan": "basic", "mode": "later"}
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid request"


class TestBillingTriggers:
    def test_requires_cron_secret(self, client: TestClient) -> None:
        response = client.post("/api/billing/payment-result", json={"tenantId": "t1", "success": False})
        assert response.status_code == 401

        wrong = client.post(
            "/api/billing/payment-result",
            json={"tenantId": "t1", "success": False},
            headers={"Authorization": "Bearer nope"},
        )
        assert wrong.status_code == 401

    def test_payment_failure_marks_past_due(self, client: TestClient) -> None:
        _login(client, "boss", AdminRole.OWNER)
        client.post("/api/admin/subscriptions/t1/start", json={"plan": "basic"})

        response = client.post(
            "/api/billing/payment-result",
            json={"tenantId": "t1", "success": False},
            headers={"Authorization": "Bearer cron-secret"},
        )
        assert response.status_code == 200
        assert response.json()["subscription"]["status"] == "past_due"
        assert response.json()["previousStatus"] == "active"

    def test_unknown_tenant_is_illegal(self, client: TestClient) -> None:
        response = client.post(
            "/api/billing/trial-elapsed",
            json={"tenantId": "ghost"},
            headers={"Authorization": "Bearer cron-secret"},
        )
        assert response.status_code == 409
        assert response.json()["transition"] == "expire_trial"
        assert response.json()["currentStatus"] is None

    def test_redelivered_payment_attempt_counts_once(self, client: TestClient) -> None:
        _login(client, "boss", AdminRole.OWNER)
        client.post("/api/admin/subscriptions/t1/start", json={"plan": "basic"})

        payload = {"tenantId": "t1", "success": False, "attemptId": "pay_1"}
        headers = {"Authorization": "Bearer cron-secret"}
        first = client.post("/api/billing/payment-result", json=payload, headers=headers)
        again = client.post("/api/billing/payment-result", json=payload, headers=headers)
        assert first.json()["changed"] is True
        assert again.json()["changed"] is False
        assert again.json()["subscription"]["retryCount"] == 1


class TestPricePolicyApi:
    def test_stats_include_amounts(self, client: TestClient) -> None:
        _login(client, "boss", AdminRole.OWNER)
        client.post("/api/admin/subscriptions/t1/start", json={"plan": "basic"})
        client.post("/api/admin/subscriptions/t2/start", json={"plan": "basic"})

        response = client.get("/api/admin/price-policy/stats", params={"plan": "basic"})
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert body["stats"]["standard"] == {"count": 2, "totalAmount": 78_000}
        assert body["stats"]["grandfathered"]["count"] == 0
