#!/usr/bin/env python3
"""Create a user, or reset an existing user's password, in the configured store.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=alice@example.com BOOTSTRAP_PASSWORD='Correct-Horse-42' python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email alice@example.com --password 'Correct-Horse-42' --role admin

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user (must meet complexity requirements)
    SHARED_FS_ROOT: Directory holding the persisted store state
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from tokenrelay.api.schemas import normalize_email  # noqa: E402
from tokenrelay.storage.errors import ConstraintViolation  # noqa: E402


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_user(
    email: str, password: str, *, role: str = "user", dry_run: bool = False
) -> dict:
    """Create the user or reset its password.

    Returns:
        dict with user_id, email, and status ('created', 'password_reset' or 'dry_run')

    Raises:
        ValueError: if the email is not a valid address
    """
    # Same canonical form the login endpoint looks users up by
    email = normalize_email(email)

    # Import here to avoid loading config before env vars are set
    from tokenrelay.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if dry_run:
            print(f"[DRY RUN] Would reset the password of {email}")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        runtime.auth.save_password(existing_user.id, password)
        # A new password ends any session issued under the old one
        runtime.session_store.remove(existing_user.id)
        print(f"Reset password for {email} (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "password_reset"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.auth.create_user(email, password, role=role)
    print(f"Created {role} user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Create or reset a tokenrelay user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("BOOTSTRAP_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("BOOTSTRAP_PASSWORD"))
    parser.add_argument("--role", default="user", choices=["user", "admin"])
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="report what would change without writing anything",
    )
    args = parser.parse_args(argv)

    if not args.email or not args.password:
        parser.error("--email and --password (or BOOTSTRAP_EMAIL / BOOTSTRAP_PASSWORD) are required")
    if not validate_password(args.password):
        parser.error("password needs 12+ characters from at least 3 classes (upper, lower, digit, symbol)")
    try:
        email = normalize_email(args.email)
    except ValueError as exc:
        parser.error(f"{exc}: {args.email!r}")

    try:
        result = bootstrap_user(
            email, args.password, role=args.role, dry_run=args.dry_run
        )
    except (ConstraintViolation, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if result["status"] == "password_reset":
        print("Existing sessions for this user were ended.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
