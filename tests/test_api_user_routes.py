"""
tests/test_api_user_routes.py -- Integration tests for principal and tenant management.

Covers:
  - POST /users: tier creation matrix, tenant resolution, duplicates,
    default grants and the activation mail
  - PATCH /users/{id}: tenant-scoped management, self-protection, session
    revocation on deactivation, soft delete
  - /tenants and /tenants/{id}/users|applications: root-only writes and the
    tenant boundary
"""

from __future__ import annotations

from auth.models import Tier

PASSWORD = "correct-horse"  # seeded by conftest


def _error_code(resp) -> str:
    return resp.json()["error"]["code"]


class TestCreateUser:
    def test_admin_creates_user_in_own_tenant(self, api_client):
        client, directory = api_client
        resp = client.post(
            "/api/v1/users",
            json={"email": "Hire.One@Example.com", "name": "Hire One"},
            headers=directory.auth("admin_a"),
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["email"] == "hire.one@example.com"
        assert data["tier"] == "user"
        assert data["tenant_id"] == directory.tenant_a.id
        assert data["first_login"] is True

        assert ("activation", "hire.one@example.com") in client.app.state.notifier.sent
        perms = client.get(f"/api/v1/user-permissions/user/{data['id']}/by-function", headers=directory.auth("admin_a"))
        assert perms.json() == {"dashboard": ["read"], "sensors": ["read"]}

    def test_new_user_cannot_log_in_with_unknown_initial_password(self, api_client):
        client, directory = api_client
        client.post(
            "/api/v1/users", json={"email": "hire.two@example.com", "name": "Hire Two"}, headers=directory.auth("admin_a")
        )
        resp = client.post("/api/v1/auth/login", json={"email": "hire.two@example.com", "password": PASSWORD})
        assert resp.status_code == 401

    def test_admin_cannot_create_admin(self, api_client):
        client, directory = api_client
        resp = client.post(
            "/api/v1/users",
            json={"email": "boss@example.com", "name": "Boss", "tier": "admin"},
            headers=directory.auth("admin_a"),
        )
        assert resp.status_code == 403
        assert _error_code(resp) == "FORBIDDEN"
        # The decision reason never reaches the client.
        assert "admin cannot" not in resp.text

    def test_admin_cannot_create_in_other_tenant(self, api_client):
        client, directory = api_client
        resp = client.post(
            "/api/v1/users",
            json={"email": "spy@example.com", "name": "Spy", "tenant_id": directory.tenant_b.id},
            headers=directory.auth("admin_a"),
        )
        assert resp.status_code == 403

    def test_user_cannot_create(self, api_client):
        client, directory = api_client
        resp = client.post(
            "/api/v1/users", json={"email": "friend@example.com", "name": "Friend"}, headers=directory.auth("user_a")
        )
        assert resp.status_code == 403

    def test_root_must_name_a_tenant(self, api_client):
        client, directory = api_client
        resp = client.post(
            "/api/v1/users", json={"email": "floating@example.com", "name": "Floating"}, headers=directory.auth("root")
        )
        assert resp.status_code == 400
        assert _error_code(resp) == "TENANT_REQUIRED"

    def test_unknown_tenant(self, api_client):
        client, directory = api_client
        resp = client.post(
            "/api/v1/users",
            json={"email": "lost@example.com", "name": "Lost", "tenant_id": "no-such-tenant"},
            headers=directory.auth("root"),
        )
        assert resp.status_code == 404

    def test_root_creates_admin_and_root(self, api_client):
        client, directory = api_client
        admin = client.post(
            "/api/v1/users",
            json={"email": "admin.c@example.com", "name": "Admin C", "tier": "admin", "tenant_id": directory.tenant_b.id},
            headers=directory.auth("root"),
        )
        assert admin.status_code == 201
        assert admin.json()["tenant_id"] == directory.tenant_b.id

        root = client.post(
            "/api/v1/users",
            json={"email": "root2@example.com", "name": "Root Two", "tier": "root", "tenant_id": directory.tenant_a.id},
            headers=directory.auth("root"),
        )
        assert root.status_code == 201
        assert root.json()["tenant_id"] is None

    def test_duplicate_email(self, api_client):
        client, directory = api_client
        resp = client.post(
            "/api/v1/users", json={"email": "user.a@example.com", "name": "Copy"}, headers=directory.auth("admin_a")
        )
        assert resp.status_code == 409
        assert _error_code(resp) == "CONFLICT"

    def test_name_too_short(self, api_client):
        client, directory = api_client
        resp = client.post("/api/v1/users", json={"email": "x@example.com", "name": "X"}, headers=directory.auth("root"))
        assert resp.status_code == 422


class TestUpdateUser:
    def test_admin_deactivates_own_tenant_user(self, api_client, api_add_principal):
        client, directory = api_client
        target = api_add_principal("temp@example.com", Tier.USER, directory.tenant_a.id)
        login = client.post("/api/v1/auth/login", json={"email": "temp@example.com", "password": PASSWORD}).json()

        resp = client.patch(f"/api/v1/users/{target.id}", json={"is_active": False}, headers=directory.auth("admin_a"))
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False

        refresh = client.post("/api/v1/auth/refresh-token", json={"refresh_token": login["refresh_token"]})
        assert refresh.status_code == 401
        me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {login['access_token']}"})
        assert me.status_code == 401
        relogin = client.post("/api/v1/auth/login", json={"email": "temp@example.com", "password": PASSWORD})
        assert _error_code(relogin) == "USER_INACTIVE"

        back = client.patch(f"/api/v1/users/{target.id}", json={"is_active": True}, headers=directory.auth("admin_a"))
        assert back.json()["is_active"] is True

    def test_admin_cannot_manage_other_tenant(self, api_client):
        client, directory = api_client
        resp = client.patch(
            f"/api/v1/users/{directory.admin_b.id}", json={"is_active": False}, headers=directory.auth("admin_a")
        )
        assert resp.status_code == 403

    def test_admin_cannot_manage_root(self, api_client):
        client, directory = api_client
        resp = client.patch(f"/api/v1/users/{directory.root.id}", json={"is_active": False}, headers=directory.auth("admin_a"))
        assert resp.status_code == 403

    def test_cannot_deactivate_self(self, api_client):
        client, directory = api_client
        resp = client.patch(f"/api/v1/users/{directory.root.id}", json={"deleted": True}, headers=directory.auth("root"))
        assert resp.status_code == 403

    def test_unknown_user(self, api_client):
        client, directory = api_client
        resp = client.patch("/api/v1/users/missing", json={"is_active": False}, headers=directory.auth("root"))
        assert resp.status_code == 404
        assert _error_code(resp) == "USER_NOT_FOUND"

    def test_soft_delete(self, api_client, api_add_principal):
        client, directory = api_client
        target = api_add_principal("gone@example.com", Tier.USER, directory.tenant_b.id)
        resp = client.patch(f"/api/v1/users/{target.id}", json={"deleted": True}, headers=directory.auth("root"))
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False

        login = client.post("/api/v1/auth/login", json={"email": "gone@example.com", "password": PASSWORD})
        assert login.status_code == 404
        assert _error_code(login) == "USER_NOT_FOUND"

        again = client.patch(f"/api/v1/users/{target.id}", json={"is_active": True}, headers=directory.auth("root"))
        assert again.status_code == 404


class TestTenants:
    def test_root_lists_and_creates(self, api_client):
        client, directory = api_client
        created = client.post("/api/v1/tenants", json={"name": "Tenant C"}, headers=directory.auth("root"))
        assert created.status_code == 201
        names = {t["name"] for t in client.get("/api/v1/tenants", headers=directory.auth("root")).json()}
        assert {"Tenant A", "Tenant B", "Tenant C"} <= names

    def test_admin_cannot_list_or_create(self, api_client):
        client, directory = api_client
        assert client.get("/api/v1/tenants", headers=directory.auth("admin_a")).status_code == 403
        assert client.post("/api/v1/tenants", json={"name": "X"}, headers=directory.auth("admin_a")).status_code == 403

    def test_tenant_users_boundary(self, api_client):
        client, directory = api_client
        a = directory.tenant_a.id
        b = directory.tenant_b.id
        own = client.get(f"/api/v1/tenants/{a}/users", headers=directory.auth("admin_a"))
        assert own.status_code == 200
        assert "admin.a@example.com" in {p["email"] for p in own.json()}

        assert client.get(f"/api/v1/tenants/{b}/users", headers=directory.auth("admin_a")).status_code == 403
        assert client.get(f"/api/v1/tenants/{b}/users", headers=directory.auth("root")).status_code == 200

    def test_user_needs_users_read_grant(self, api_client):
        client, directory = api_client
        resp = client.get(f"/api/v1/tenants/{directory.tenant_a.id}/users", headers=directory.auth("user_a"))
        assert resp.status_code == 403

    def test_applications(self, api_client):
        client, directory = api_client
        a = directory.tenant_a.id
        b = directory.tenant_b.id
        resp = client.get(f"/api/v1/tenants/{a}/applications", headers=directory.auth("admin_a"))
        assert resp.json()["application_ids"] == ["main-app"]

        assert (
            client.post(
                f"/api/v1/tenants/{b}/applications", json={"application_id": "main-app"}, headers=directory.auth("admin_b")
            ).status_code
            == 403
        )
        subscribed = client.post(
            f"/api/v1/tenants/{b}/applications", json={"application_id": "main-app"}, headers=directory.auth("root")
        )
        assert subscribed.status_code == 201
        assert subscribed.json()["application_ids"] == ["main-app"]
