#!/usr/bin/env python3
import os
import secrets
import sys
from datetime import datetime, timedelta, timezone

from backend.app.db import get_store
from backend.app.security import hash_password
from backend.app.store.base import DocumentStore, Query
from backend.app.validation import normalize_phone


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _generate_password() -> str:
    # URL-safe and copy/paste friendly.
    return secrets.token_urlsafe(16)


def bootstrap_owner(
    store: DocumentStore,
    phone: str,
    password: str,
    name: str = "Owner",
    store_id: str = "",
    trial_days: int = 30,
    now=None,
):
    """Creates the first owner account; returns its uid, or None if the phone is taken."""
    phone = normalize_phone(phone) or ""
    if not phone:
        raise ValueError("phone is required")
    if store.query(Query("users").where("phone", "==", phone).limit(1)):
        # Idempotent: don't create duplicate users.
        return None

    now = now or datetime.now(timezone.utc)
    uid = store.new_id()
    store.set(
        "users",
        uid,
        {
            "phone": phone,
            "name": name,
            "role": "owner",
            "storeId": store_id or uid,
            "passwordHash": hash_password(password),
            "active": True,
            "fcmTokens": [],
            "createdAt": now,
            "subscriptionExpiryDate": now + timedelta(days=trial_days),
        },
    )
    return uid


def main() -> int:
    if not _truthy(os.getenv("BOOTSTRAP_OWNER", "")):
        return 0

    phone = os.getenv("BOOTSTRAP_OWNER_PHONE", "").strip()
    if not phone:
        print("bootstrap_owner: BOOTSTRAP_OWNER_PHONE is empty", file=sys.stderr)
        return 2

    password = os.getenv("BOOTSTRAP_OWNER_PASSWORD")
    generated_password = False
    if not password:
        password = _generate_password()
        generated_password = True

    uid = bootstrap_owner(
        get_store(),
        phone,
        password,
        name=os.getenv("BOOTSTRAP_OWNER_NAME", "Owner").strip() or "Owner",
        store_id=os.getenv("BOOTSTRAP_OWNER_STORE_ID", "").strip(),
        trial_days=int(os.getenv("BOOTSTRAP_OWNER_TRIAL_DAYS", "30")),
    )
    if uid is None:
        return 0

    print("BOOTSTRAP_OWNER_CREATED")
    print(f"uid: {uid}")
    print(f"phone: {normalize_phone(phone)}")
    if generated_password:
        print(f"password: {password}")
    else:
        print("password: (provided via BOOTSTRAP_OWNER_PASSWORD)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
