#!/usr/bin/env python3
"""Create the first SUPER_ADMIN account, or promote an existing user.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.gov ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.gov --username admin --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the administrator
    ADMIN_USERNAME: Username (defaults to the email's local part)
    ADMIN_PASSWORD: Password for the administrator (8-128 characters)
    SHARED_FS_ROOT: Where the credential store and signing secrets live
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    return 8 <= len(password) <= 128


async def bootstrap_admin(email: str, username: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote a SUPER_ADMIN.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from grantportal.service.runtime import get_runtime
    from grantportal.storage.models import Role

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if Role.SUPER_ADMIN in existing_user.roles:
            print(f"User {email} already holds SUPER_ADMIN (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant SUPER_ADMIN to existing user {email}")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        runtime.store.update_user(
            existing_user.id, roles=existing_user.roles | {Role.SUPER_ADMIN}
        )
        # Outstanding renewal credentials still carry the old role set
        runtime.store.bump_token_version(existing_user.id)
        print(f"Granted SUPER_ADMIN to {email} (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create SUPER_ADMIN user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(email, username, password, roles=(Role.SUPER_ADMIN,))
    print(f"Created SUPER_ADMIN user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a SUPER_ADMIN account for the grant portal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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
    if not validate_password(args.password):
        print("Error: Password must be between 8 and 128 characters")
        sys.exit(1)
    username = args.username or args.email.split("@", 1)[0]

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/grantportal-bootstrap")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, username, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSUPER_ADMIN created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to SUPER_ADMIN!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already a SUPER_ADMIN.")


if __name__ == "__main__":
    main()
