#!/usr/bin/env python3
"""Bootstrap an admin account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=... python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password ...

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

from gatehouse.storage.models import Role


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin account or promote an existing one.

    Returns:
        dict with user_id, email, and status
    """
    # Imported late so the environment set up in main() is seen by settings
    from gatehouse.service.events import EventType
    from gatehouse.service.runtime import Runtime

    runtime = Runtime()
    await runtime.start()
    try:
        existing = runtime.store.get_user_by_email(email.strip().lower())
        if existing:
            if existing.role == Role.ADMIN.value:
                print(f"User {email} already exists as admin (id: {existing.id})")
                return {"user_id": existing.id, "email": email, "status": "already_admin"}
            if dry_run:
                print(f"[DRY RUN] Would promote existing user {email} to admin")
                return {"user_id": existing.id, "email": email, "status": "dry_run"}
            runtime.store.update_user_role(existing.id, Role.ADMIN.value)
            runtime.bus.publish(
                EventType.USER_UPDATED, {"user_id": existing.id, "fields": ["role"]}
            )
            print(f"Promoted existing user {email} to admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        user, pair = await runtime.accounts.register(email, password)
        runtime.store.update_user_role(user["id"], Role.ADMIN.value)
        runtime.bus.publish(
            EventType.USER_UPDATED, {"user_id": user["id"], "fields": ["role"]}
        )
        print(f"Created admin user: {email} (id: {user['id']})")
        return {
            "user_id": user["id"],
            "email": email,
            "status": "created",
            "access_token": pair.access_token,
        }
    finally:
        await runtime.stop()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Gatehouse",
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

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/gatehouse-bootstrap")

    # Use memory store if no database configured
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
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
