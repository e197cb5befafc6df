#!/usr/bin/env python3
"""
TenantGate -- bootstrap CLI.

Creates the records an empty database needs before the API is usable: the
first root principal, tenants, and the permission catalogue of an application.
Reads DATABASE_URL and the other settings from the environment / .env, like
the API does.

Usage:
  python main.py create-root --email root@example.com --name "Root"
  python main.py create-tenant "Acme Corp"
  python main.py create-admin --tenant <tenant_id> --email admin@acme.com --name "Acme Admin"
  python main.py seed-permissions --application main-app --tenant <tenant_id>

Passwords are prompted for (twice) unless --password is given.
"""

import argparse
import getpass
import sys

from auth.models import PermissionLevel, Principal, Tier
from auth.permission_store import PermissionStore
from auth.permissions import KNOWN_FUNCTIONS
from auth.store import UserStore, new_id
from auth.tokens import hash_password
from core.config import get_settings

_MIN_PASSWORD = 6
_MAX_PASSWORD = 100


def _read_password(given: str | None) -> str:
    if given is not None:
        password = given
    else:
        password = getpass.getpass("  Password: ")
        if getpass.getpass("  Repeat password: ") != password:
            sys.exit("  [!] Passwords do not match.")
    if not _MIN_PASSWORD <= len(password) <= _MAX_PASSWORD:
        sys.exit(f"  [!] Password must be {_MIN_PASSWORD} to {_MAX_PASSWORD} characters.")
    return password


def _create_principal(store: UserStore, args: argparse.Namespace, tier: Tier, tenant_id: str | None) -> None:
    if store.get_user_by_email(args.email) is not None:
        sys.exit(f"  [!] A user with email {args.email} already exists.")
    password = _read_password(args.password)
    principal = Principal(
        id=new_id(),
        email=args.email,
        name=args.name,
        tier=tier,
        hashed_password=hash_password(password, rounds=get_settings().bcrypt_rounds),
        tenant_id=tenant_id,
        # The operator chose this password, so no activation step is needed.
        first_login=False,
    )
    store.create_user(principal)
    print(f"  Created {tier.value} {principal.email} (id {principal.id})")


def cmd_create_root(store: UserStore, args: argparse.Namespace) -> None:
    if store.has_root() and not args.force:
        sys.exit("  [!] A root principal already exists. Use --force to create another.")
    _create_principal(store, args, Tier.ROOT, None)


def cmd_create_admin(store: UserStore, args: argparse.Namespace) -> None:
    tenant = store.get_tenant(args.tenant)
    if tenant is None or tenant.is_deleted:
        sys.exit(f"  [!] Tenant {args.tenant} not found.")
    _create_principal(store, args, Tier.ADMIN, tenant.id)


def cmd_create_tenant(store: UserStore, args: argparse.Namespace) -> None:
    tenant = store.create_tenant(args.name)
    print(f"  Created tenant {tenant.name} (id {tenant.id})")


def cmd_seed_permissions(store: UserStore, args: argparse.Namespace) -> None:
    """Create one permission per (known function, level) for the application. Idempotent."""
    permissions = PermissionStore(get_settings().database_url)
    try:
        created = 0
        for fn in KNOWN_FUNCTIONS:
            for level in PermissionLevel:
                if permissions.find_permission(fn, level.value, args.application) is not None:
                    continue
                permissions.create_permission(fn, level.value, f"{level.value.capitalize()} {fn}", args.application)
                created += 1
        print(f"  {created} permission(s) created for application {args.application}")
        if args.tenant:
            if store.get_tenant(args.tenant) is None:
                sys.exit(f"  [!] Tenant {args.tenant} not found.")
            permissions.subscribe_tenant(args.tenant, args.application)
            print(f"  Tenant {args.tenant} subscribed to {args.application}")
    finally:
        permissions.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="tenantgate",
        description="TenantGate bootstrap: create root, tenants, admins and the permission catalogue.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    root = sub.add_parser("create-root", help="Create a root principal (no tenant).")
    root.add_argument("--email", required=True)
    root.add_argument("--name", required=True)
    root.add_argument("--password", help="Skip the interactive prompt (avoid in shared shells).")
    root.add_argument("--force", action="store_true", help="Allow more than one root principal.")
    root.set_defaults(func=cmd_create_root)

    tenant = sub.add_parser("create-tenant", help="Create a tenant and print its id.")
    tenant.add_argument("name")
    tenant.set_defaults(func=cmd_create_tenant)

    admin = sub.add_parser("create-admin", help="Create an admin principal inside a tenant.")
    admin.add_argument("--tenant", required=True, help="Tenant id.")
    admin.add_argument("--email", required=True)
    admin.add_argument("--name", required=True)
    admin.add_argument("--password")
    admin.set_defaults(func=cmd_create_admin)

    seed = sub.add_parser("seed-permissions", help="Create the permission catalogue for an application.")
    seed.add_argument("--application", required=True, help="Application id the permissions belong to.")
    seed.add_argument("--tenant", help="Also subscribe this tenant id to the application.")
    seed.set_defaults(func=cmd_seed_permissions)

    args = parser.parse_args()
    store = UserStore(get_settings().database_url)
    try:
        args.func(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    main()
