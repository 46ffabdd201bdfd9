#!/usr/bin/env python3
"""Create an identity record for testing and initial setup.

Usage:
    # Using environment variables:
    IDENTITY_HANDLE=alice IDENTITY_EMAIL=alice@example.com IDENTITY_PASSWORD='S3cret!' \
        python scripts/create_identity.py --fullname "Alice Example"

    # Or with command line args:
    python scripts/create_identity.py --handle alice --email alice@example.com \
        --password 'S3cret!' --fullname "Alice Example"

Environment Variables:
    IDENTITY_HANDLE, IDENTITY_EMAIL, IDENTITY_PASSWORD: defaults for the flags
    DATABASE_URL: PostgreSQL connection string (optional, uses the memory store
        with a JSON snapshot under STATE_DIR if not set)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_identity(
    handle: str,
    email: str,
    password: str,
    fullname: str,
    *,
    dry_run: bool = False,
) -> dict:
    """Create the identity unless the handle or email is already taken.

    Returns:
        dict with user_id, handle, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sessionward.service.runtime import get_runtime, shutdown_runtime

    runtime = get_runtime()
    try:
        existing = runtime.store.find_by_handle_or_email(handle) or runtime.store.find_by_handle_or_email(email)
        if existing:
            print(f"Identity {existing.handle} already exists (id: {existing.id})")
            return {
                "user_id": existing.id,
                "handle": existing.handle,
                "email": existing.email,
                "status": "exists",
            }

        if dry_run:
            print(f"[DRY RUN] Would create identity: {handle} <{email}>")
            return {"user_id": None, "handle": handle, "email": email, "status": "dry_run"}

        result = runtime.sessions.register(handle, email, password, fullname)
        if not result.ok:
            raise RuntimeError(
                f"registration failed: {result.failure.kind.value} ({result.failure.reason})"
            )
        user = result.value
        print(f"Created identity: {user.handle} (id: {user.id})")
        return {"user_id": user.id, "handle": user.handle, "email": user.email, "status": "created"}
    finally:
        shutdown_runtime()


def main():
    parser = argparse.ArgumentParser(
        description="Create a sessionward identity",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--handle",
        default=os.environ.get("IDENTITY_HANDLE"),
        help="Login handle (or set IDENTITY_HANDLE env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("IDENTITY_EMAIL"),
        help="Email address (or set IDENTITY_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("IDENTITY_PASSWORD"),
        help="Password (or set IDENTITY_PASSWORD env var)",
    )
    parser.add_argument("--fullname", default=None, help="Display name (defaults to the handle)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for flag, value in (("--handle", args.handle), ("--email", args.email), ("--password", args.password)):
        if not value:
            print(f"Error: {flag} is required")
            sys.exit(1)

    # Token secrets are never used here, but settings validation requires them
    if not os.environ.get("ACCESS_TOKEN_SECRET"):
        os.environ["ACCESS_TOKEN_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("REFRESH_TOKEN_SECRET"):
        os.environ["REFRESH_TOKEN_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("STATE_DIR", "/tmp/sessionward-bootstrap")
        print(f"Note: Using memory store persisted under {os.environ['STATE_DIR']} (set DATABASE_URL for Postgres)")

    try:
        result = create_identity(
            args.handle,
            args.email,
            args.password,
            args.fullname or args.handle,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nIdentity created successfully!")
        print(f"  Handle: {result['handle']}")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - identity already exists.")


if __name__ == "__main__":
    main()
