#!/usr/bin/env python3
"""Create the first super admin account.

Usage:
    # Using environment variables:
    SUPER_ADMIN_EMAIL=root@example.org SUPER_ADMIN_PASSWORD=ChangeMe123 \
        python scripts/bootstrap_super_admin.py --name "State Cell"

    # Or with command line args:
    python scripts/bootstrap_super_admin.py --name "State Cell" \
        --email root@example.org --password ChangeMe123 --phone 9876543210

Environment Variables:
    SUPER_ADMIN_EMAIL: Email for the super admin
    SUPER_ADMIN_PASSWORD: Password (at least 8 characters)
    DATABASE_URL: Postgres DSN for the account store
    USE_MEMORY_STORE: Set to true to write the JSON snapshot under SHARED_FS_ROOT instead
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_super_admin(
    name: str, email: str, password: str, phone: str | None, dry_run: bool = False
) -> dict:
    """Create a super admin unless one with the same email already exists."""
    # Import here to avoid loading config before env vars are set
    from caldost.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_super_admin_by_email(email.strip().lower())
    if existing:
        print(f"Super admin {email} already exists (id: {existing.public_user_id})")
        return {"public_user_id": existing.public_user_id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create super admin: {email}")
        return {"public_user_id": None, "email": email, "status": "dry_run"}

    account = runtime.accounts.create_super_admin(
        name=name, email=email, password=password, phone_number=phone
    )
    return {"public_user_id": account.public_user_id, "email": account.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super admin for the CALDOST grievance portal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", default=os.environ.get("SUPER_ADMIN_NAME", "Super Admin"))
    parser.add_argument(
        "--email",
        default=os.environ.get("SUPER_ADMIN_EMAIL"),
        help="Super admin email (or set SUPER_ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SUPER_ADMIN_PASSWORD"),
        help="Super admin password (or set SUPER_ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--phone", default=os.environ.get("SUPER_ADMIN_PHONE"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SUPER_ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or SUPER_ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    # Account creation does not touch OTPs or sessions
    os.environ.setdefault("ALLOW_MEMORY_SECRET_STORE", "true")

    from caldost.service.errors import ServiceError

    try:
        result = bootstrap_super_admin(
            args.name, args.email, args.password, args.phone, args.dry_run
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Public ID: {result['public_user_id']}")


if __name__ == "__main__":
    main()
