#!/usr/bin/env python3
"""Create a password account for an exam platform user.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=proctor@example.com BOOTSTRAP_PASSWORD=SecurePassword123! \\
        python scripts/bootstrap_user.py --roles proctor

    # Or with command line args:
    python scripts/bootstrap_user.py --email admin@example.com --password SecurePassword123! --roles admin,examiner

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the account
    BOOTSTRAP_PASSWORD: Password for the account (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_user(email: str, password: str, roles: list[str], dry_run: bool = False) -> dict:
    """Create a user or reset an existing user's password and roles.

    Returns:
        dict with user_id, email, and status ('created', 'updated' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from examauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if dry_run:
        action = "update" if existing_user else "create"
        print(f"[DRY RUN] Would {action} user {email} with roles {roles}")
        return {
            "user_id": existing_user.id if existing_user else None,
            "email": email,
            "status": "dry_run",
        }

    if existing_user:
        runtime.store.update_user_roles(existing_user.id, roles)
        runtime.credentials.save_password(existing_user.id, password)
        print(f"Updated user {email} (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "updated"}

    user = runtime.store.create_user(email, roles=roles, email_verified=True)
    runtime.credentials.save_password(user.id, password)
    print(f"Created user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a password account for the exam auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="Account email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Account password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--roles",
        default="admin",
        help="Comma-separated roles, e.g. admin,examiner",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    roles = [role.strip() for role in args.roles.split(",") if role.strip()]
    if not roles:
        print("Error: at least one role is required")
        sys.exit(1)

    if not os.environ.get("STATE_DIR"):
        os.environ["STATE_DIR"] = "/tmp/examauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_user(args.email.strip().lower(), args.password, roles, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Roles: {', '.join(roles)}")
    elif result["status"] == "updated":
        print("\nExisting user updated.")


if __name__ == "__main__":
    main()
