#!/usr/bin/env python3
"""Provision login credentials for an account, creating the account if asked.

Usage:
    # First administrator on an empty store:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Pass' \
        python scripts/provision_credentials.py --create-user --permission-level ADMIN

    # Credentials for an existing account:
    python scripts/provision_credentials.py --user-id <id> --email ops@example.com --password 'Str0ng!Pass'

Environment Variables:
    ADMIN_EMAIL: Email for the credentials
    ADMIN_PASSWORD: Password (8+ chars with upper, lower, digit and symbol)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def provision(
    email: str,
    password: str,
    *,
    user_id: str | None = None,
    create_user: bool = False,
    permission_level: str = "ADMIN",
    dry_run: bool = False,
) -> dict:
    """Create credentials (and optionally the account) through AuthService.

    Returns:
        dict with user_id, email and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sentinel_auth.logging import configure_logging
    from sentinel_auth.service.runtime import build_runtime
    from sentinel_auth.service.passwords import validate_password_policy

    validate_password_policy(password)
    runtime = build_runtime()
    settings = runtime.settings
    configure_logging(
        settings.log_level,
        json_output=settings.log_json,
        development_mode=settings.log_dev_mode,
    )

    existing = runtime.store.get_credential_by_email(email)
    if existing:
        print(f"Credentials for {email} already exist (user id: {existing.user_id})")
        return {"user_id": existing.user_id, "email": email, "status": "exists"}

    if dry_run:
        action = "create account and credentials" if create_user else "create credentials"
        print(f"[DRY RUN] Would {action} for {email}")
        return {"user_id": user_id, "email": email, "status": "dry_run"}

    if create_user:
        user = runtime.store.create_user(permission_level, user_id=user_id)
        user_id = user.id
        print(f"Created {user.permission_level.value} account (id: {user_id})")

    credential = runtime.auth.provision_credentials(user_id, email, password, password)
    print(f"Created credentials for {credential.email} (user id: {credential.user_id})")
    return {"user_id": credential.user_id, "email": credential.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Provision credentials for a Sentinel account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Login email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--user-id", help="Existing account id to attach credentials to")
    parser.add_argument(
        "--create-user",
        action="store_true",
        help="Create the account first (uses --user-id as its id when given)",
    )
    parser.add_argument(
        "--permission-level",
        default="ADMIN",
        choices=["ALTO-COMANDO", "COMANDO", "ADMIN", "BASE", "RECRUTA"],
        help="Permission level for a created account",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not args.user_id and not args.create_user:
        print("Error: pass --user-id for an existing account or --create-user")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/sentinel-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from sentinel_auth.service.errors import ServiceError

    try:
        result = provision(
            args.email,
            args.password,
            user_id=args.user_id,
            create_user=args.create_user,
            permission_level=args.permission_level,
            dry_run=args.dry_run,
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nCredentials provisioned successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
