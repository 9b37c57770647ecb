#!/usr/bin/env python3
"""Bootstrap a family owner account for local testing and demos.

Usage:
    # Using environment variables:
    OWNER_EMAIL=owner@example.com OWNER_PASSWORD=SecurePass123 FAMILY_NAME=Smiths \
        python scripts/bootstrap_family.py

    # Or with command line args:
    python scripts/bootstrap_family.py --email owner@example.com --password SecurePass123 \
        --family-name Smiths --first-name Jo --last-name Smith

Environment Variables:
    OWNER_EMAIL: Email for the owner account
    OWNER_PASSWORD: Password for the owner account (8-128 characters)
    FAMILY_NAME: Name of the family to create
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


async def bootstrap_family(
    email: str,
    password: str,
    family_name: str,
    *,
    first_name: str,
    last_name: str,
    dry_run: bool = False,
) -> dict:
    """Create an owner account together with its family.

    Returns:
        dict with user_id, family_id, email, and status
    """
    # Deferred so settings see the env defaults main() applies
    from expensebuddy.service.runtime import get_runtime

    runtime = get_runtime()

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user:
        print(f"User {email} already exists (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "family_id": existing_user.family_id,
            "email": email,
            "status": "exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would create {email} as owner of '{family_name}'")
        return {"user_id": None, "family_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(
        email,
        password,
        first_name=first_name,
        last_name=last_name,
        family_name=family_name,
    )
    family = runtime.store.get_family(result.user.family_id)
    # The verification email is sent in the background; finish it before exit
    await runtime.mailer.drain()

    print(f"Created owner {email} (id: {result.user.id})")
    return {
        "user_id": result.user.id,
        "family_id": result.user.family_id,
        "invite_code": family.invite_code if family else None,
        "email": email,
        "status": "created",
        "access_token": result.tokens.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a family owner for Expense Buddy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("OWNER_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("OWNER_PASSWORD"))
    parser.add_argument("--family-name", default=os.environ.get("FAMILY_NAME"))
    parser.add_argument("--first-name", default="Family")
    parser.add_argument("--last-name", default="Owner")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for flag, value in (
        ("--email/OWNER_EMAIL", args.email),
        ("--password/OWNER_PASSWORD", args.password),
        ("--family-name/FAMILY_NAME", args.family_name),
    ):
        if not value:
            print(f"Error: {flag} required")
            sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/expensebuddy-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_family(
                args.email,
                args.password,
                args.family_name,
                first_name=args.first_name,
                last_name=args.last_name,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nFamily created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Family ID: {result['family_id']}")
        print(f"  Invite code: {result['invite_code']}")
        print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "exists":
        print("\nNo changes made - the account already exists.")


if __name__ == "__main__":
    main()
