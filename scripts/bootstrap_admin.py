#!/usr/bin/env python3
"""Bootstrap a SUPER_ADMIN principal for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! ADMIN_TENANT_ID=t-1 \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! --tenant-id t-1

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_PASSWORD: Password for the admin principal (must meet complexity requirements)
    ADMIN_TENANT_ID: Tenant the admin belongs to
    REDIS_URL: Redis connection string (uses memory store if not set)
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


def bootstrap_admin(email: str, password: str, tenant_id: str, dry_run: bool = False) -> dict:
    """Create an admin principal, or promote and re-key an existing one.

    Returns:
        dict with principal_id, email, and status ('created', 'promoted' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from taptab.service.runtime import get_runtime
    from taptab.storage.common import generate_uuid
    from taptab.storage.models import Principal, Role

    runtime = get_runtime()
    existing = runtime.store.get_principal_by_email(email)

    if dry_run:
        action = "promote existing" if existing else "create"
        print(f"[DRY RUN] Would {action} admin principal: {email}")
        return {
            "principal_id": existing.principal.id if existing else None,
            "email": email,
            "status": "dry_run",
        }

    password_hash = runtime.auth.passwords.hash(password)
    if existing:
        principal = Principal(
            id=existing.principal.id,
            email=existing.principal.email,
            role=Role.SUPER_ADMIN,
            tenant_id=existing.principal.tenant_id,
        )
        runtime.store.save_principal(principal, password_hash=password_hash, is_active=True)
        print(f"Promoted existing principal {email} to SUPER_ADMIN (id: {principal.id})")
        return {"principal_id": principal.id, "email": email, "status": "promoted"}

    principal = Principal(
        id=generate_uuid(),
        email=email,
        role=Role.SUPER_ADMIN,
        tenant_id=tenant_id,
    )
    runtime.store.save_principal(principal, password_hash=password_hash, is_active=True)
    print(f"Created admin principal: {email} (id: {principal.id})")
    return {"principal_id": principal.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a SUPER_ADMIN principal for TapTab",
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
        "--tenant-id",
        default=os.environ.get("ADMIN_TENANT_ID"),
        help="Tenant ID for a new admin (or set ADMIN_TENANT_ID env var)",
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

    if not args.tenant_id:
        print("Error: --tenant-id or ADMIN_TENANT_ID environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    # Principals only persist in Redis
    if not os.environ.get("REDIS_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set REDIS_URL for persistence)")

    try:
        result = bootstrap_admin(args.email, args.password, args.tenant_id, args.dry_run)
    except (ValueError, RuntimeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin principal created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Principal ID: {result['principal_id']}")
    elif result["status"] == "promoted":
        print("\nExisting principal promoted to SUPER_ADMIN with a new password.")


if __name__ == "__main__":
    main()
