#!/usr/bin/env python3
"""Create an admin account, or promote an existing one.

Usage:
    ADMIN_USERNAME=admin ADMIN_PASSWORD='Long-Passphrase-42' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --username admin --password 'Long-Passphrase-42'

Environment Variables:
    ADMIN_USERNAME: Username for the admin account
    ADMIN_PASSWORD: Password for the admin account (12+ chars, 3+ character classes)
    DATABASE_URL: PostgreSQL connection string (the in-memory store is used if unset)
"""
from __future__ import annotations

import argparse
import os
import sys


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(username: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, username and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # imported late so the environment set up in main() is what Settings sees
    from watchlist.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.credentials.find_by_username(username)

    if existing:
        if existing.role == "admin":
            return {"user_id": existing.id, "username": username, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, "admin")
        return {"user_id": existing.id, "username": username, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = runtime.credentials.create(
        username, runtime.auth.hash_password(password), role="admin"
    )
    return {"user_id": user.id, "username": username, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the watchlist tracker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
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
    args = parser.parse_args(argv)

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    result = bootstrap_admin(args.username, args.password, args.dry_run)
    status = result["status"]
    if status == "created":
        print(f"Created admin user: {result['username']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Promoted existing user {result['username']} to admin (id: {result['user_id']})")
    elif status == "already_admin":
        print(f"User {result['username']} is already an admin (id: {result['user_id']})")
    else:
        print(f"[DRY RUN] No changes made for {result['username']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
