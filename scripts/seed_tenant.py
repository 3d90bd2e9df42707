#!/usr/bin/env python3
"""Seed a tenant, an OAuth client and a user for local runs.

Usage:
    # Public SPA client plus a user, memory store persisted under DATA_ROOT:
    DATA_ROOT=/tmp/tenantauth python scripts/seed_tenant.py \\
        --slug acme --client-id acme-web --redirect-uri http://localhost:3000/cb \\
        --email alice@example.com --password 'correct horse battery'

    # Confidential client with a secret and a tenant database:
    python scripts/seed_tenant.py --slug acme --dsn postgresql://localhost/acme \\
        --client-id acme-api --client-secret s3cret --confidential

Environment Variables:
    DATA_ROOT: control plane root (tenants/ and keys/ live here)
    DATABASE_URL: global Postgres store (optional, memory store if not set)
    SEED_USER_PASSWORD: password for --email when --password is omitted
"""
from __future__ import annotations

import argparse
import os
import sys
import uuid
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_SCOPES = ["openid", "profile", "email", "offline_access"]


def seed(args: argparse.Namespace) -> dict:
    # Import here to avoid loading config before env vars are set
    from tenantauth.service.credentials import hash_secret
    from tenantauth.service.runtime import get_runtime
    from tenantauth.storage.models import (
        CLIENT_CONFIDENTIAL,
        CLIENT_PUBLIC,
        Client,
        Tenant,
        TenantSettings,
    )

    runtime = get_runtime()
    control_plane = runtime.control_plane
    result: dict = {"tenant": args.slug}

    tenant = control_plane.get_tenant_by_slug(args.slug)
    if tenant is None:
        tenant = Tenant(
            id=args.tenant_id or str(uuid.uuid4()),
            slug=args.slug,
            name=args.name or args.slug,
            settings=TenantSettings(user_db_dsn=args.dsn),
        )
        control_plane.save_tenant(tenant)
        print(f"Created tenant {tenant.slug} (id: {tenant.id})")
    elif args.dsn and tenant.settings.user_db_dsn != args.dsn:
        tenant.settings.user_db_dsn = args.dsn
        control_plane.save_tenant(tenant)
        print(f"Updated database for tenant {tenant.slug}")
    else:
        print(f"Tenant {tenant.slug} already exists (id: {tenant.id})")
    result["tenant_id"] = tenant.id

    if args.client_id:
        secret_hash = None
        if args.confidential:
            if not args.client_secret:
                raise SystemExit("Error: --client-secret is required for confidential clients")
            secret_hash, _ = hash_secret(args.client_secret)
        client = Client(
            id=str(uuid.uuid4()),
            client_id=args.client_id,
            tenant_id=tenant.id,
            name=args.client_id,
            client_type=CLIENT_CONFIDENTIAL if args.confidential else CLIENT_PUBLIC,
            redirect_uris=list(args.redirect_uri or []),
            scopes_allowed=list(args.scope or DEFAULT_SCOPES),
            secret_hash=secret_hash,
        )
        control_plane.save_client(tenant.slug, client)
        print(f"Saved {client.client_type} client {client.client_id}")
        result["client_id"] = client.client_id

    if args.email:
        password = args.password or os.environ.get("SEED_USER_PASSWORD")
        if not password:
            raise SystemExit("Error: --password or SEED_USER_PASSWORD required with --email")
        store = runtime.selector.select(tenant.slug).store
        user = store.get_user_by_email(tenant.id, args.email)
        if user is None:
            user = store.create_user(args.email, tenant_id=tenant.id, email_verified=True)
            print(f"Created user {user.email} (id: {user.id})")
        else:
            print(f"User {user.email} already exists; password reset")
        password_hash, algo = hash_secret(password)
        store.save_password(user.id, password_hash, algo)
        for role in args.role or []:
            store.assign_role(user.id, role)
        result["user_id"] = user.id

    return result


def main():
    parser = argparse.ArgumentParser(
        description="Seed a tenant, client and user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--slug", required=True, help="Tenant slug")
    parser.add_argument("--tenant-id", help="Tenant id (random UUID when omitted)")
    parser.add_argument("--name", help="Display name")
    parser.add_argument("--dsn", help="Tenant user database DSN (memory:// for in-process)")
    parser.add_argument("--client-id", help="OAuth client id to create or replace")
    parser.add_argument("--client-secret", help="Secret for a confidential client")
    parser.add_argument("--confidential", action="store_true", help="Create a confidential client")
    parser.add_argument("--redirect-uri", action="append", help="Registered redirect URI (repeatable)")
    parser.add_argument("--scope", action="append", help="Allowed scope (repeatable)")
    parser.add_argument("--email", help="User email to create")
    parser.add_argument("--password", help="User password (or set SEED_USER_PASSWORD)")
    parser.add_argument("--role", action="append", help="Role to assign, e.g. sys:admin")
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = seed(args)
    except SystemExit:
        raise
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print("\nSeed complete:")
    for key, value in result.items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    main()
