"""
tests/test_api_permission_routes.py -- Integration tests for the permission catalogue and grant endpoints.

Covers:
  - Catalogue reads for any authenticated principal, writes for root only
  - Grant, revoke, set and check on a principal, scoped by can_manage_user
  - Self-service reads of one's own grants
  - Default set and validation helpers
"""

from __future__ import annotations

import uuid

import pytest

from auth.models import Tier


@pytest.fixture()
def recruit(api_client, api_add_principal):
    """A fresh tenant-A user with no grants."""
    _, directory = api_client
    return api_add_principal(f"recruit-{uuid.uuid4().hex[:8]}@example.com", Tier.USER, directory.tenant_a.id)


def _perm_body(function_name: str, level: str, display_name: str = "X") -> dict:
    return {
        "function_name": function_name,
        "permission_level": level,
        "display_name": display_name,
        "application_id": "main-app",
    }


def _check(client, headers, user_id, fn, level) -> bool:
    resp = client.get(
        f"/api/v1/user-permissions/user/{user_id}/check",
        params={"function_name": fn, "permission_level": level},
        headers=headers,
    )
    assert resp.status_code == 200
    return resp.json()["allowed"]


class TestCatalogue:
    def test_reads(self, api_client):
        client, directory = api_client
        headers = directory.auth("user_a")
        listed = client.get("/api/v1/permissions", headers=headers)
        assert listed.status_code == 200
        assert {"sensors", "dashboard"} <= {p["function_name"] for p in listed.json()}

        assert "sensors" in client.get("/api/v1/permissions/functions", headers=headers).json()
        assert client.get("/api/v1/permissions/levels/Sensors", headers=headers).json() == ["read", "write"]

        one = client.get(f"/api/v1/permissions/{directory.sensors_read.id}", headers=headers)
        assert one.json()["permission_level"] == "read"

    def test_reads_require_auth(self, api_client):
        client, _ = api_client
        assert client.get("/api/v1/permissions").status_code == 401

    def test_tenant_permissions(self, api_client):
        client, directory = api_client
        mine = client.get("/api/v1/permissions/tenant", headers=directory.auth("user_a")).json()
        assert {"sensors", "dashboard"} <= {p["function_name"] for p in mine}
        assert client.get("/api/v1/permissions/tenant", headers=directory.auth("root")).json() == []

    def test_unknown_permission(self, api_client):
        client, directory = api_client
        resp = client.get("/api/v1/permissions/missing", headers=directory.auth("root"))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    def test_root_lifecycle(self, api_client):
        client, directory = api_client
        headers = directory.auth("root")
        created = client.post(
            "/api/v1/permissions",
            json=_perm_body("Alerts", "read", "Read alerts"),
            headers=headers,
        )
        assert created.status_code == 201
        perm = created.json()
        assert perm["function_name"] == "alerts"

        dup = client.post(
            "/api/v1/permissions",
            json=_perm_body("ALERTS", "read", "Again"),
            headers=headers,
        )
        assert dup.status_code == 409

        updated = client.put(f"/api/v1/permissions/{perm['id']}", json={"description": "See alerts"}, headers=headers)
        assert updated.json()["description"] == "See alerts"

        assert client.delete(f"/api/v1/permissions/{perm['id']}", headers=headers).status_code == 204
        assert client.get(f"/api/v1/permissions/{perm['id']}", headers=headers).status_code == 404
        assert client.delete(f"/api/v1/permissions/{perm['id']}", headers=headers).status_code == 404

    def test_invalid_level(self, api_client):
        client, directory = api_client
        resp = client.post(
            "/api/v1/permissions",
            json=_perm_body("alerts", "admin"),
            headers=directory.auth("root"),
        )
        assert resp.status_code == 422

    def test_admin_cannot_write_catalogue(self, api_client):
        client, directory = api_client
        resp = client.post(
            "/api/v1/permissions",
            json=_perm_body("audit", "read"),
            headers=directory.auth("admin_a"),
        )
        assert resp.status_code == 403
        deleted = client.delete(f"/api/v1/permissions/{directory.sensors_read.id}", headers=directory.auth("admin_a"))
        assert deleted.status_code == 403


class TestGrants:
    def test_grant_then_revoke(self, api_client, recruit):
        client, directory = api_client
        admin = directory.auth("admin_a")
        body = {"user_id": recruit.id, "permission_id": directory.sensors_write.id}

        assert not _check(client, admin, recruit.id, "sensors", "write")
        granted = client.post("/api/v1/user-permissions/grant", json=body, headers=admin)
        assert granted.status_code == 200
        assert granted.json()["granted"] is True
        assert granted.json()["granted_by"] == directory.admin_a.id
        assert _check(client, admin, recruit.id, "sensors", "write")

        revoked = client.post("/api/v1/user-permissions/revoke", json=body, headers=admin)
        assert revoked.json()["allowed"] is True
        assert not _check(client, admin, recruit.id, "sensors", "write")

    def test_revoke_without_grant(self, api_client, recruit):
        client, directory = api_client
        body = {"user_id": recruit.id, "permission_id": directory.sensors_read.id}
        resp = client.post("/api/v1/user-permissions/revoke", json=body, headers=directory.auth("admin_a"))
        assert resp.json()["allowed"] is False

    def test_other_tenant_admin_cannot_grant(self, api_client, recruit):
        client, directory = api_client
        body = {"user_id": recruit.id, "permission_id": directory.sensors_write.id}
        resp = client.post("/api/v1/user-permissions/grant", json=body, headers=directory.auth("admin_b"))
        assert resp.status_code == 403

    def test_user_cannot_grant_itself(self, api_client):
        client, directory = api_client
        body = {"user_id": directory.user_a.id, "permission_id": directory.sensors_write.id}
        resp = client.post("/api/v1/user-permissions/grant", json=body, headers=directory.auth("user_a"))
        assert resp.status_code == 403

    def test_grant_unknown_permission(self, api_client, recruit):
        client, directory = api_client
        body = {"user_id": recruit.id, "permission_id": "missing"}
        resp = client.post("/api/v1/user-permissions/grant", json=body, headers=directory.auth("admin_a"))
        assert resp.status_code == 404

    def test_set_replaces_everything(self, api_client, recruit):
        client, directory = api_client
        admin = directory.auth("admin_a")
        client.post(
            "/api/v1/user-permissions/grant",
            json={"user_id": recruit.id, "permission_id": directory.sensors_read.id},
            headers=admin,
        )
        resp = client.put(
            f"/api/v1/user-permissions/user/{recruit.id}/set",
            json={"permission_ids": [directory.sensors_write.id]},
            headers=admin,
        )
        assert resp.status_code == 200
        assert [g["permission_id"] for g in resp.json()] == [directory.sensors_write.id]
        assert _check(client, admin, recruit.id, "sensors", "write")
        assert not _check(client, admin, recruit.id, "sensors", "read")

    def test_root_and_admin_checks_pass(self, api_client):
        client, directory = api_client
        root = directory.auth("root")
        assert _check(client, root, directory.admin_b.id, "machines", "delete")
        assert _check(client, root, directory.root.id, "anything", "update")


class TestSelfService:
    def test_user_reads_own_grants(self, api_client):
        client, directory = api_client
        headers = directory.auth("user_a")
        resp = client.get(f"/api/v1/user-permissions/user/{directory.user_a.id}", headers=headers)
        assert resp.status_code == 200
        assert [(p["function_name"], p["permission_level"]) for p in resp.json()] == [("sensors", "read")]

        assert _check(client, headers, directory.user_a.id, "sensors", "read")
        assert not _check(client, headers, directory.user_a.id, "sensors", "write")

    def test_user_cannot_read_others(self, api_client):
        client, directory = api_client
        resp = client.get(f"/api/v1/user-permissions/user/{directory.admin_a.id}", headers=directory.auth("user_a"))
        assert resp.status_code == 403

    def test_unknown_user(self, api_client):
        client, directory = api_client
        resp = client.get("/api/v1/user-permissions/user/missing", headers=directory.auth("root"))
        assert resp.status_code == 404


class TestHelpers:
    def test_default_set(self, api_client):
        client, directory = api_client
        resp = client.get("/api/v1/user-permissions/default", headers=directory.auth("user_a"))
        assert {"function_name": "sensors", "permission_level": "read"} in resp.json()
        assert len(resp.json()) == 4

    def test_validate(self, api_client):
        client, directory = api_client
        headers = directory.auth("admin_a")
        ok = client.post(
            "/api/v1/user-permissions/validate",
            json={"permissions": [{"function_name": "sensors", "permission_level": "read"}]},
            headers=headers,
        )
        assert ok.json() == {"valid": True, "errors": []}

        bad = client.post(
            "/api/v1/user-permissions/validate",
            json={"permissions": [{"function_name": "teleport", "permission_level": "read"}]},
            headers=headers,
        )
        assert bad.json()["valid"] is False
        assert len(bad.json()["errors"]) == 1
