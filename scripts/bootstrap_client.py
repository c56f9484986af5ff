#!/usr/bin/env python3
"""Register an OAuth client (and optionally a superadmin) for initial setup.

Usage:
    # Confidential client with a generated secret:
    python scripts/bootstrap_client.py --client-id c1 --redirect-uri https://app.example.com/cb

    # Public client, plus a superadmin user:
    python scripts/bootstrap_client.py --client-id spa --public \
        --redirect-uri https://spa.example.com/cb --admin-email admin@example.com

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    HMAC_SECRET / JWT_SECRET: required outside TEST_MODE
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_client(
    client_id: str,
    redirect_uris: List[str],
    scopes: List[str],
    *,
    public: bool = False,
    admin_email: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create the client record and optional superadmin.

    Returns:
        dict with client_id, the one-time client_secret and admin user id
    """
    # Import here to avoid loading config before env vars are set
    from orgidp.service.runtime import get_runtime
    from orgidp.storage.models import ClientApp

    runtime = get_runtime()

    if runtime.store.get_client_app(client_id):
        print(f"Client {client_id} already exists")
        return {"client_id": client_id, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create {'public' if public else 'confidential'} client {client_id}")
        return {"client_id": client_id, "status": "dry_run"}

    client_secret = None if public else secrets.token_urlsafe(32)
    runtime.store.create_client_app(
        ClientApp(
            client_id=client_id,
            name=client_id,
            redirect_uris=redirect_uris,
            allowed_scopes=scopes,
            is_confidential=not public,
            client_secret_hash=(
                runtime.hasher.hash_client_secret(client_secret) if client_secret else None
            ),
        )
    )
    result = {"client_id": client_id, "client_secret": client_secret, "status": "created"}

    if admin_email:
        user = runtime.store.create_user(admin_email, email_verified=True, is_superadmin=True)
        result["admin_user_id"] = user.id
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Register an OAuth client for orgidp",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--client-id", required=True, help="Public client identifier")
    parser.add_argument(
        "--redirect-uri",
        action="append",
        required=True,
        help="Allowed redirect URI (exact match); repeatable",
    )
    parser.add_argument(
        "--scope",
        default="openid profile email",
        help="Space separated scopes the client may request",
    )
    parser.add_argument("--public", action="store_true", help="Create a public (PKCE-only) client")
    parser.add_argument("--admin-email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_client(
            args.client_id,
            args.redirect_uri,
            args.scope.split(" "),
            public=args.public,
            admin_email=args.admin_email,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nClient registered.")
        print(f"  Client ID: {result['client_id']}")
        if result.get("client_secret"):
            print(f"  Client secret (shown once): {result['client_secret']}")
        if result.get("admin_user_id"):
            print(f"  Superadmin user ID: {result['admin_user_id']}")


if __name__ == "__main__":
    main()
