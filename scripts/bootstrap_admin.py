#!/usr/bin/env python3
"""Bootstrap an admin principal for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        SHARED_FS_ROOT=/srv/authgate python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_PASSWORD: Password for the admin principal (must meet complexity requirements)
    SHARED_FS_ROOT: Directory holding the credential repository state; without it
        the principal only lives for the duration of this script
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

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


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin principal, or promote an existing one.

    Returns:
        dict with principal_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Imported late so the environment is settled before settings load
    from authgate.service.runtime import get_runtime
    from authgate.storage.models import Role

    runtime = get_runtime()
    existing = runtime.store.get_principal_by_email(email)

    if existing:
        if existing.role == Role.ADMIN:
            print(f"Principal {email} already exists as admin (id: {existing.id})")
            return {"principal_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing principal {email} to admin")
            return {"principal_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_role(existing.id, Role.ADMIN)
        # Tokens minted before the promotion still carry the old role
        await runtime.auth.revoke_subject_tokens(existing.id)
        print(f"Promoted existing principal {email} to admin (id: {existing.id})")
        return {"principal_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin principal: {email}")
        return {"principal_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, password, role=Role.ADMIN)
    print(f"Created admin principal: {email} (id: {result.principal.id})")
    return {"principal_id": result.principal.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin principal for authgate",
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        # Only used to mint the throwaway pair returned by registration
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("SHARED_FS_ROOT"):
        print("Note: SHARED_FS_ROOT not set; the principal will not outlive this script")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))

        if result["status"] == "created":
            print("\nAdmin principal created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  Principal ID: {result['principal_id']}")
        elif result["status"] == "promoted":
            print("\nExisting principal promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - principal is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
