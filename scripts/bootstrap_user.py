#!/usr/bin/env python3
"""Create an initial user, optionally issuing a token pair for smoke tests.

Usage:
    # Using environment variables:
    BOOTSTRAP_USERNAME=admin BOOTSTRAP_EMAIL=admin@example.com \
        BOOTSTRAP_PASSWORD=SecurePassword123! python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --username admin --email admin@example.com \
        --password SecurePassword123! --role admin --issue-tokens

Environment Variables:
    BOOTSTRAP_USERNAME: Username for the new user
    BOOTSTRAP_EMAIL: Email for the new user
    BOOTSTRAP_PASSWORD: Password for the new user
    DATABASE_URL: PostgreSQL connection string (optional; without it the
        memory store snapshots to SHARED_FS_ROOT/state/token_store.json)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(
    username: str,
    email: str,
    password: str,
    *,
    role: str = "user",
    issue_tokens: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the user unless it exists.

    Returns:
        dict with user_id, username and status ('created', 'exists' or 'dry_run')
    """
    # imported late so the env defaults below are in place before settings load
    from tokengate.service.errors import DuplicateIdentityError
    from tokengate.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.get_user_by_username(username)
    if existing:
        print(f"User {username} already exists (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {username} <{email}>")
        return {"user_id": None, "username": username, "status": "dry_run"}

    try:
        user = runtime.users.register(username, email, password, role=role)
    except DuplicateIdentityError as exc:
        print(f"Error: {exc.message}")
        return {"user_id": None, "username": username, "status": "conflict"}

    result = {"user_id": user.id, "username": username, "status": "created"}
    if issue_tokens:
        pair = runtime.tokens.generate_tokens(user)
        result["access_token"] = pair.access_token
        result["refresh_token"] = pair.refresh_token
    print(f"Created {role} user: {username} (id: {user.id})")
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a tokengate user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("BOOTSTRAP_USERNAME"),
        help="Username (or set BOOTSTRAP_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="Email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument("--role", default="user", choices=["user", "admin"])
    parser.add_argument(
        "--issue-tokens",
        action="store_true",
        help="Print an access/refresh pair for the new user",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for flag, value in (
        ("--username", args.username),
        ("--email", args.email),
        ("--password", args.password),
    ):
        if not value:
            print(f"Error: {flag} or its BOOTSTRAP_* environment variable is required")
            sys.exit(1)

    if len(args.password) < 6:
        print("Error: Password must be at least 6 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for Postgres)")

    try:
        result = bootstrap_user(
            args.username,
            args.email,
            args.password,
            role=args.role,
            issue_tokens=args.issue_tokens,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "conflict":
        sys.exit(1)
    if result.get("access_token"):
        print(f"  Access Token: {result['access_token']}")
        print(f"  Refresh Token: {result['refresh_token']}")


if __name__ == "__main__":
    main()
