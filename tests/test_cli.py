"""
tests/test_cli.py -- Tests for the bootstrap commands in main.py.

The command functions are called directly with an argparse.Namespace and the
stores fixture; get_settings is patched so seed-permissions opens the same
in-memory database.
"""

from __future__ import annotations

import argparse

import pytest

import main as cli
from auth.tokens import verify_password
from core.config import Settings


@pytest.fixture()
def settings(stores, monkeypatch):
    user_store, _ = stores
    patched = Settings(debug=True, database_url=str(user_store.engine.url), bcrypt_rounds=4)
    monkeypatch.setattr(cli, "get_settings", lambda: patched)
    return patched


class TestCreateRoot:
    def test_creates_activated_root(self, stores, settings, capsys):
        store = stores[0]
        args = argparse.Namespace(email="Root@Example.com", name="Root", password="rootpass", force=False)
        cli.cmd_create_root(store, args)

        root = store.get_user_by_email("root@example.com")
        assert root.tenant_id is None
        assert root.first_login is False
        assert verify_password("rootpass", root.hashed_password)
        assert "Created root" in capsys.readouterr().out

    def test_second_root_needs_force(self, stores, settings):
        store = stores[0]
        cli.cmd_create_root(store, argparse.Namespace(email="r1@example.com", name="R1", password="rootpass", force=False))
        with pytest.raises(SystemExit):
            cli.cmd_create_root(
                store, argparse.Namespace(email="r2@example.com", name="R2", password="rootpass", force=False)
            )
        cli.cmd_create_root(store, argparse.Namespace(email="r2@example.com", name="R2", password="rootpass", force=True))
        assert store.get_user_by_email("r2@example.com") is not None

    def test_short_password_rejected(self, stores, settings):
        with pytest.raises(SystemExit):
            cli.cmd_create_root(
                stores[0], argparse.Namespace(email="r@example.com", name="R", password="123", force=False)
            )


class TestTenantAndAdmin:
    def test_create_admin_in_tenant(self, stores, settings):
        store = stores[0]
        cli.cmd_create_tenant(store, argparse.Namespace(name="Acme"))
        (tenant,) = store.list_tenants()
        cli.cmd_create_admin(
            store,
            argparse.Namespace(tenant=tenant.id, email="admin@example.com", name="Admin", password="adminpass"),
        )
        admin = store.get_user_by_email("admin@example.com")
        assert admin.tenant_id == tenant.id
        assert admin.tier.value == "admin"

    def test_unknown_tenant(self, stores, settings):
        with pytest.raises(SystemExit):
            cli.cmd_create_admin(
                stores[0],
                argparse.Namespace(tenant="missing", email="admin@example.com", name="Admin", password="adminpass"),
            )


class TestSeedPermissions:
    def test_seed_is_idempotent_and_subscribes(self, stores, settings, capsys):
        user_store, permission_store = stores
        tenant = user_store.create_tenant("Acme")
        args = argparse.Namespace(application="main-app", tenant=tenant.id)

        cli.cmd_seed_permissions(user_store, args)
        first = len(permission_store.list_permissions("main-app"))
        cli.cmd_seed_permissions(user_store, args)

        assert first == len(cli.KNOWN_FUNCTIONS) * 4
        assert len(permission_store.list_permissions("main-app")) == first
        assert permission_store.list_tenant_applications(tenant.id) == ["main-app"]
        assert "0 permission(s) created" in capsys.readouterr().out
