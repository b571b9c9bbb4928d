#!/usr/bin/env python3
import argparse
import sys

from backend.app.db import get_store
from backend.app.security import hash_password
from backend.app.store.base import DocumentStore, Query
from backend.app.validation import normalize_phone


def reset_user_password(store: DocumentStore, phone: str, password: str):
    """Sets a new password, reactivates the account and revokes its sessions. Returns (uid, revoked)."""
    rows = store.query(Query("users").where("phone", "==", normalize_phone(phone) or "").limit(1))
    if not rows:
        return None, 0
    uid = rows[0].id
    store.update("users", uid, {"passwordHash": hash_password(password), "active": True})

    # Security: revoke any existing sessions so old tokens/cookies can't be reused
    # after a password reset.
    sessions = store.query(Query("auth_sessions").where("userId", "==", uid).where("isActive", "==", True))
    revoked = store.batch_update(("auth_sessions", s.id, {"isActive": False}) for s in sessions)
    return uid, revoked


def main() -> int:
    parser = argparse.ArgumentParser(description="Reset a user's password (admin/maintenance).")
    parser.add_argument("--phone", required=True)
    parser.add_argument("--password", required=True)
    args = parser.parse_args()

    if not normalize_phone(args.phone):
        print("phone is required", file=sys.stderr)
        return 2

    uid, revoked = reset_user_password(get_store(), args.phone, args.password)
    if uid is None:
        print(f"user not found: {args.phone}", file=sys.stderr)
        return 2

    print(f"OK (revoked {revoked} sessions)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
