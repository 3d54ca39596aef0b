#!/usr/bin/env python3
"""Create an admin account, or promote an existing one.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Correct-Horse-42' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Correct-Horse-42'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for a new admin account
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(runtime, email: str, password: str, dry_run: bool = False) -> dict:
    """Ensure ``email`` belongs to a confirmed admin account.

    Returns:
        dict with account_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    from authcore.storage.common import update_account_with_retry
    from authcore.storage.models import ROLE_ADMIN

    existing = runtime.store.get_account_by_email(email)
    if existing and existing.role == ROLE_ADMIN:
        return {"account_id": existing.id, "email": existing.email, "status": "already_admin"}
    if dry_run:
        return {
            "account_id": existing.id if existing else None,
            "email": email,
            "status": "dry_run",
        }

    status = "promoted"
    account_id = existing.id if existing else None
    if existing is None:
        result = runtime.auth.register(email, password)
        if not result.ok:
            raise RuntimeError(result.error.message)
        account_id = result.data.account.id
        # the operator does not sign in as the new admin here
        runtime.tokens.revoke(result.data.refresh_token, runtime.clock.now())
        status = "created"

    now = runtime.clock.now()

    def _promote(account):
        account.role = ROLE_ADMIN
        account.email_confirmed = True
        account.email_confirmation_token_hash = None
        account.email_confirmation_expires_at = None
        account.updated_at = now
        return account

    outcome = update_account_with_retry(runtime.store, account_id, _promote)
    if outcome is None:
        raise RuntimeError(f"account {account_id} disappeared during bootstrap")
    promoted = outcome[1]
    return {"account_id": promoted.id, "email": promoted.email, "status": status}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an authcore admin account",
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
        help="Password for a newly created account (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(args.email)
    if existing is None and not args.password:
        print("Error: --password or ADMIN_PASSWORD required to create a new account")
        return 1

    try:
        result = bootstrap_admin(runtime, args.email, args.password or "", args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        return 1
    finally:
        runtime.close()

    messages = {
        "created": "Admin account created",
        "promoted": "Existing account promoted to admin",
        "already_admin": "No changes needed; account is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['account_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
