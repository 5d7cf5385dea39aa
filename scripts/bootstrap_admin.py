#!/usr/bin/env python3
"""Bootstrap the first super-admin account.

The account is created pending and an invitation link is printed (and emailed
when SMTP is configured); opening the link lets the admin set a password.

Usage:
    ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --name "Ops"

Environment Variables:
    ADMIN_EMAIL: Email for the super-admin
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
    APP_BASE_URL: Base URL used to build the invitation link
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, name: str = "", dry_run: bool = False) -> dict:
    """Create (or re-invite) a pending super-admin.

    Returns:
        dict with user_id, email, status and, when issued, invite_url
    """
    # Import here to avoid loading config before env vars are set
    from feastid.service.runtime import get_runtime
    from feastid.storage.models import UserStatus

    runtime = get_runtime()
    super_admin = runtime.settings.super_admin_role

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user and existing_user.status != UserStatus.PENDING:
        if super_admin in existing_user.roles:
            print(f"User {email} is already a super admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        print(f"User {email} already exists with roles {sorted(existing_user.roles)}")
        return {"user_id": existing_user.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would invite super admin: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    if existing_user is None:
        user = runtime.store.create_user(
            email, name=name, roles=[super_admin], status=UserStatus.PENDING
        )
        status = "created"
    else:
        user = runtime.store.update_user(
            existing_user.id, {"roles": [super_admin], "name": name or existing_user.name}
        )
        status = "reinvited"

    link = runtime.magic_links.issue_invite(user.id, user.email)
    runtime.email.send_invitation(user.email, link.url, link.expires_at)
    return {
        "user_id": user.id,
        "email": user.email,
        "status": status,
        "invite_url": link.url,
        "expires_at": link.expires_at.isoformat(),
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first super admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", ""), help="Display name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email or "@" not in args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/feastid-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email.strip().lower(), args.name, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] in {"created", "reinvited"}:
        print("\nSuper admin invited!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Invite link (expires {result['expires_at']}):")
        print(f"    {result['invite_url']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already a super admin.")
    elif result["status"] == "exists":
        sys.exit(2)


if __name__ == "__main__":
    main()
