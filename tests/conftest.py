"""
tests/conftest.py -- Shared test fixtures for TenantGate unit and integration tests.

This module provides:
  - make_stores(): isolated in-memory DBs for the user and permission stores
  - seed_directory(): two tenants, a root, one admin per tenant and a user
    holding a single sensors:read grant
  - RecordingNotifier: a LogNotifier that also remembers what it was asked to send
  - make_auth_service(): an AuthService wired with fast bcrypt and a RecordingNotifier
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient plus the seeded directory and ready-made access tokens
  - file_stores / file_auth_service: the same over a SQLite file, for tests that
    race two requests against each other

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient and run_in_threadpool run store calls in worker threads.
Plain :memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG must be set before any core/auth/api import so get_settings() generates
JWT secrets in dev mode instead of raising. RATE_LIMIT_ENABLED=false keeps the
per-IP limiter from tripping on the many logins the suite performs; the
per-account throttle is still active and tested.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: Set before any core/auth/api import.
os.environ.setdefault("DEBUG", "true")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ATTEMPT_STORE"] = "memory"
os.environ["SMTP_HOST"] = ""

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_state
from auth.models import Permission, Principal, Tenant, Tier
from auth.notifier import LogNotifier
from auth.permission_store import PermissionStore
from auth.recovery import RecoveryFlow
from auth.service import AuthService
from auth.store import UserStore, new_id
from auth.throttle import InMemoryAttemptStore, LoginThrottle
from auth.tokens import TokenService, hash_password
from core.config import get_settings

PASSWORD = "correct-horse"
ACCESS_SECRET = "a" * 40
REFRESH_SECRET = "b" * 40
APP_ID = "main-app"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_url(name: str) -> str:
    return f"sqlite:///file:test_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_stores(name: str = "unit", url: str | None = None) -> tuple[UserStore, PermissionStore]:
    """Create a user store and a permission store sharing one fresh DB (in-memory unless url is given)."""
    url = url or memory_url(name)
    return UserStore(url), PermissionStore(url)


def make_principal(
    store: UserStore,
    email: str,
    tier: Tier,
    tenant_id: str | None,
    *,
    password: str = PASSWORD,
    first_login: bool = False,
    is_active: bool = True,
    name: str = "Test Principal",
) -> Principal:
    return store.create_user(
        Principal(
            id=new_id(),
            email=email,
            name=name,
            tier=tier,
            hashed_password=hash_password(password, rounds=4),
            tenant_id=tenant_id,
            first_login=first_login,
            is_active=is_active,
        )
    )


@dataclass
class Directory:
    """The seeded tenants, principals and permissions."""

    tenant_a: Tenant
    tenant_b: Tenant
    root: Principal
    admin_a: Principal
    admin_b: Principal
    user_a: Principal
    sensors_read: Permission
    sensors_write: Permission
    tokens: dict[str, str] = field(default_factory=dict)

    def auth(self, who: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens[who]}"}


def seed_directory(user_store: UserStore, permission_store: PermissionStore) -> Directory:
    tenant_a = user_store.create_tenant("Tenant A")
    tenant_b = user_store.create_tenant("Tenant B")
    permission_store.subscribe_tenant(tenant_a.id, APP_ID)
    sensors_read = permission_store.create_permission("sensors", "read", "Read sensors", APP_ID)
    sensors_write = permission_store.create_permission("sensors", "write", "Write sensors", APP_ID)
    permission_store.create_permission("dashboard", "read", "Read dashboard", APP_ID)

    root = make_principal(user_store, "root@example.com", Tier.ROOT, None)
    admin_a = make_principal(user_store, "admin.a@example.com", Tier.ADMIN, tenant_a.id)
    admin_b = make_principal(user_store, "admin.b@example.com", Tier.ADMIN, tenant_b.id)
    user_a = make_principal(user_store, "user.a@example.com", Tier.USER, tenant_a.id)
    permission_store.grant(user_a.id, sensors_read.id, granted_by=admin_a.id)

    return Directory(
        tenant_a=tenant_a,
        tenant_b=tenant_b,
        root=root,
        admin_a=admin_a,
        admin_b=admin_b,
        user_a=user_a,
        sensors_read=sensors_read,
        sensors_write=sensors_write,
    )


def make_auth_service(
    store: UserStore,
    *,
    notifier=None,
    max_attempts: int = 5,
    access_expire_seconds: int = 3600,
    refresh_expire_seconds: int = 30 * 24 * 3600,
) -> AuthService:
    tokens = TokenService(
        ACCESS_SECRET,
        REFRESH_SECRET,
        access_expire_seconds=access_expire_seconds,
        refresh_expire_seconds=refresh_expire_seconds,
    )
    throttle = LoginThrottle(InMemoryAttemptStore(), max_attempts=max_attempts)
    recovery = RecoveryFlow(store, notifier or RecordingNotifier(), "http://frontend.test")
    return AuthService(store, tokens, throttle, recovery, bcrypt_rounds=4)


class RecordingNotifier(LogNotifier):
    """LogNotifier that keeps (kind, recipient) pairs for assertions."""

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[tuple[str, str]] = []

    def send_password_reset(self, to_email, name, reset_url, code):
        self.sent.append(("password_reset", to_email))
        return super().send_password_reset(to_email, name, reset_url, code)

    def send_activation(self, to_email, name, activation_url, code):
        self.sent.append(("activation", to_email))
        return super().send_activation(to_email, name, activation_url, code)


# ---------------------------------------------------------------------------
# Lifespan patch
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, permission_store: PermissionStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state through the same init_state()
    the production lifespan uses, so routes see the real services on isolated DBs.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, get_settings(), user_store, permission_store, notifier=RecordingNotifier())
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def db_url() -> str:
    return memory_url("unit")


@pytest.fixture()
def stores() -> Generator[tuple[UserStore, PermissionStore], None, None]:
    user_store, permission_store = make_stores()
    yield user_store, permission_store
    permission_store.close()
    user_store.close()


@pytest.fixture()
def add_principal(stores):
    """Factory bound to the test user store: add_principal(email, tier, tenant_id, **kw)."""

    def _add(email: str, tier: Tier, tenant_id: str | None, **kwargs) -> Principal:
        return make_principal(stores[0], email, tier, tenant_id, **kwargs)

    return _add


@pytest.fixture()
def directory(stores) -> Directory:
    return seed_directory(*stores)


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, Directory], None, None]:
    """Yield (client, directory) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use isolated in-memory stores. Access tokens
    for every seeded principal are minted up front with the app's own secrets.
    """
    user_store, permission_store = make_stores("api")
    seeded = seed_directory(user_store, permission_store)
    tokens = TokenService.from_settings(get_settings())
    for who in ("root", "admin_a", "admin_b", "user_a"):
        seeded.tokens[who] = tokens.issue(getattr(seeded, who)).access_token

    app.router.lifespan_context = _patch_lifespan(user_store, permission_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, seeded

    permission_store.close()
    user_store.close()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def auth_service(stores, notifier) -> AuthService:
    return make_auth_service(stores[0], notifier=notifier)


@pytest.fixture()
def api_add_principal(api_client):
    """Like add_principal, but writes into the api_client's user store."""
    client, _ = api_client

    def _add(email: str, tier: Tier, tenant_id: str | None, **kwargs) -> Principal:
        return make_principal(client.app.state.user_store, email, tier, tenant_id, **kwargs)

    return _add


@pytest.fixture()
def file_stores(tmp_path) -> Generator[tuple[UserStore, PermissionStore], None, None]:
    """Stores on a SQLite file. Concurrent writers wait on the file lock instead of failing."""
    user_store, permission_store = make_stores(url=f"sqlite:///{tmp_path / 'tenantgate.db'}")
    yield user_store, permission_store
    permission_store.close()
    user_store.close()


@pytest.fixture()
def file_directory(file_stores) -> Directory:
    return seed_directory(*file_stores)


@pytest.fixture()
def file_auth_service(file_stores, notifier) -> AuthService:
    return make_auth_service(file_stores[0], notifier=notifier)
