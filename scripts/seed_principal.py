#!/usr/bin/env python3
"""Seed a principal into the local memory store for development logins.

Usage:
    # Using environment variables:
    SEED_IDENTIFIER=admin@example.com SEED_PASSWORD=SecurePassword123! \
        SEED_PHONE=+237675321739 python scripts/seed_principal.py --role admin

    # Or with command line args:
    python scripts/seed_principal.py --identifier student@example.com \
        --password SecurePassword123! --phone +237675321739 --role student

Environment Variables:
    SEED_IDENTIFIER: Email or username of the principal
    SEED_PASSWORD: Password (must meet complexity requirements)
    SEED_PHONE: Phone that receives the OTP in dev mode (the code is logged)
    SHARED_FS_ROOT: Where the memory store keeps its state file
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports from a source checkout
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from sessiongate.service.phone import mask_phone, normalize_phone


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def seed_principal(
    identifier: str,
    password: str,
    *,
    phone: str,
    role: str,
    full_name: str | None = None,
    fs_root: str,
    dry_run: bool = False,
) -> dict:
    """Create the principal, or update the role of an existing one.

    Returns:
        dict with principal_id, identifier and status
        ('created', 'role_updated', 'unchanged' or 'dry_run')
    """
    from sessiongate.storage.memory import MemoryStore

    store = MemoryStore(fs_root=fs_root)
    existing = store.lookup(identifier)

    if existing:
        record = store.profiles.get(existing)
        if record is not None and record.role == role:
            print(f"Principal {identifier} already has role {role} (id: {existing})")
            return {"principal_id": existing, "identifier": identifier, "status": "unchanged"}
        if dry_run:
            print(f"[DRY RUN] Would set role of {identifier} to {role}")
            return {"principal_id": existing, "identifier": identifier, "status": "dry_run"}
        store.set_role(existing, role)
        print(f"Updated role of {identifier} to {role} (id: {existing})")
        return {"principal_id": existing, "identifier": identifier, "status": "role_updated"}

    if dry_run:
        print(f"[DRY RUN] Would create principal: {identifier} ({role})")
        return {"principal_id": None, "identifier": identifier, "status": "dry_run"}

    principal_id = store.create_principal(
        identifier, password, phone=phone, role=role, full_name=full_name
    )
    print(f"Created principal: {identifier} (id: {principal_id})")
    return {"principal_id": principal_id, "identifier": identifier, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed a principal for SessionGate development",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--identifier",
        default=os.environ.get("SEED_IDENTIFIER"),
        help="Email or username (or set SEED_IDENTIFIER env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="Password (or set SEED_PASSWORD env var)",
    )
    parser.add_argument(
        "--phone",
        default=os.environ.get("SEED_PHONE"),
        help="OTP phone (or set SEED_PHONE env var)",
    )
    parser.add_argument("--role", default="student", help="Profile role (default: student)")
    parser.add_argument("--full-name", default=None, help="Display name for the profile")
    parser.add_argument(
        "--fs-root",
        default=os.environ.get("SHARED_FS_ROOT", "/tmp/sessiongate-dev"),
        help="State directory of the memory store",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.identifier:
        print("Error: --identifier or SEED_IDENTIFIER environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SEED_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    phone = normalize_phone(args.phone)
    if phone is None:
        print("Error: --phone or SEED_PHONE must be an international number (8-16 digits)")
        sys.exit(1)

    try:
        result = seed_principal(
            args.identifier,
            args.password,
            phone=phone,
            role=args.role,
            full_name=args.full_name,
            fs_root=args.fs_root,
            dry_run=args.dry_run,
        )
    except (ValueError, RuntimeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nPrincipal created successfully!")
        print(f"  Identifier: {result['identifier']}")
        print(f"  Principal ID: {result['principal_id']}")
        print(f"  OTP phone: {mask_phone(phone)}")
        print("  Start the server with USE_MEMORY_STORE=true and the same SHARED_FS_ROOT.")


if __name__ == "__main__":
    main()
