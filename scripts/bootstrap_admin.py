#!/usr/bin/env python3
"""Create an admin account, or promote an existing account to admin.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    JWT_SECRET / JWT_REFRESH_SECRET: signing secrets (generated if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from typing import Optional

ADMIN_PASSWORD_MIN_LENGTH = 12


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < ADMIN_PASSWORD_MIN_LENGTH or len(password) > 128:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str,
    password: str,
    dry_run: bool = False,
    *,
    runtime=None,
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Imported late so env defaults set in main() apply to settings
    from authcore.service.runtime import Runtime
    from authcore.storage.models import ROLE_ADMIN

    owned = runtime is None
    runtime = runtime or Runtime()
    try:
        existing_user = runtime.store.find_by_email(email)

        if existing_user:
            if existing_user.role == ROLE_ADMIN:
                print(f"User {email} already exists as admin (id: {existing_user.id})")
                return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

            if dry_run:
                print(f"[DRY RUN] Would promote existing user {email} to admin")
                return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

            runtime.store.update(existing_user.id, {"role": ROLE_ADMIN})
            print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        result = await runtime.auth.register(email, password, role=ROLE_ADMIN)
        user_id = result.user["id"]
        print(f"Created admin user: {email} (id: {user_id})")
        return {
            "user_id": user_id,
            "email": email,
            "status": "created",
            "access_token": result.access_token,
        }
    finally:
        if owned:
            await runtime.close()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for authcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("JWT_REFRESH_SECRET"):
        os.environ["JWT_REFRESH_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
