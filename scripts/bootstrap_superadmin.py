#!/usr/bin/env python3
"""Bootstrap the first superadmin.

Usage:
    # Using environment variables:
    SUPERADMIN_EMAIL=root@example.com SUPERADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_superadmin.py

    # Or with command line args:
    python scripts/bootstrap_superadmin.py --email root@example.com --password SecurePassword123!

Environment Variables:
    SUPERADMIN_EMAIL: Email for the superadmin user
    SUPERADMIN_PASSWORD: Password (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3 or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_superadmin(runtime, email: str, password: str, dry_run: bool = False) -> dict:
    """Create the user as superadmin, or promote an existing account.

    Returns a dict with user_id, email and status
    (created, promoted, already_superadmin or dry_run).
    """
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == "superadmin":
            print(f"User {email} already exists as superadmin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_superadmin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to superadmin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        # role changes are normally gated on an acting superadmin; there is none yet
        runtime.store.update_user_role(existing.id, "superadmin")
        print(f"Promoted existing user {email} to superadmin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create superadmin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.identity.create_user(
        email, "Superadmin", password, role="superadmin", email_verified=True
    )
    print(f"Created superadmin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a superadmin user for TenantGate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SUPERADMIN_EMAIL"),
        help="Superadmin email (or set SUPERADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SUPERADMIN_PASSWORD"),
        help="Superadmin password (or set SUPERADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SUPERADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or SUPERADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SECRET_KEY"):
        os.environ["SECRET_KEY"] = secrets.token_urlsafe(48)
    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/tenantgate-bootstrap"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    # imported late so the settings above are read
    from tenantgate.service.runtime import get_runtime

    try:
        result = bootstrap_superadmin(get_runtime(), args.email, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuperadmin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to superadmin!")
    elif result["status"] == "already_superadmin":
        print("\nNo changes needed - user is already a superadmin.")


if __name__ == "__main__":
    main()
