#!/usr/bin/env python3
"""Create the first administrator as a pre-registered user.

The account is bound to its provider identity the first time its owner logs
in with that provider and a verified primary email matching --email.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=octocat ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username octocat --email admin@example.com --auth-source github

Environment Variables:
    ADMIN_USERNAME: Provider username (GitHub login, or account email for Google/Microsoft)
    ADMIN_EMAIL: Verified primary email of that provider account
    ADMIN_AUTH_SOURCE: github, google or microsoft (default github)
    REDIS_URL: Redis connection string for the user store
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

AUTH_SOURCES = ("github", "google", "microsoft")


async def bootstrap_admin(
    username: str, email: str, auth_source: str = "github", dry_run: bool = False
) -> dict:
    """Pre-register an admin user.

    Returns:
        dict with user_id, username, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from kvauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        existing_user = await runtime.users.lookup_by_username(username)
        if existing_user:
            print(
                f"User {existing_user.username} already exists "
                f"(id: {existing_user.id}, role: {existing_user.role.value})"
            )
            return {"user_id": existing_user.id, "username": username, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {username} ({auth_source})")
            return {"user_id": None, "username": username, "status": "dry_run"}

        user = await runtime.users.create_pre_registered_user(
            username, email, "admin", auth_source
        )
        print(f"Created admin user: {username} (id: {user.id})")
        return {"user_id": user.id, "username": username, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first kvauth administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Provider username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Verified primary email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--auth-source",
        choices=AUTH_SOURCES,
        default=os.environ.get("ADMIN_AUTH_SOURCE", "github"),
        help="Identity provider the admin logs in with (default github)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)

    if not args.email or "@" not in args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("REDIS_URL") and not os.environ.get("USE_MEMORY_STORE"):
        print("Note: REDIS_URL not set, using redis://localhost:6379/0")

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email, args.auth_source, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Log in with {args.auth_source} to activate the account.")
    elif result["status"] == "exists":
        print("Error: username already exists; no changes made")
        sys.exit(1)


if __name__ == "__main__":
    main()
