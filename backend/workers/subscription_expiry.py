#!/usr/bin/env python3
import argparse
from datetime import datetime, timezone
from typing import Optional

from backend.app.db import get_store
from backend.app.logs import json_log
from backend.app.store.base import DocumentStore, Query

USERS = "users"
SESSIONS = "auth_sessions"


def expired_owners(store: DocumentStore, now: datetime):
    q = Query(USERS).where("role", "==", "owner").where("subscriptionExpiryDate", "<", now)
    return [u for u in store.query(q) if u.get("active") is not False]


def _active_sessions(store: DocumentStore, user_id: str):
    return store.query(Query(SESSIONS).where("userId", "==", user_id).where("isActive", "==", True))


def run_subscription_expiry_scan(store: DocumentStore, now: Optional[datetime] = None) -> dict:
    """
    Deactivates owners whose subscription has expired together with every
    non-owner user of their store, and revokes those users' sessions.
    Already-deactivated owners are skipped, so a rerun writes nothing.
    """
    now = now or datetime.now(timezone.utc)
    summary = {"owners": 0, "employees": 0, "sessions": 0}

    for owner in expired_owners(store, now):
        store_id = str(owner.get("storeId") or owner.id)
        updates = [(USERS, owner.id, {"active": False, "deactivatedAt": now, "deactivationReason": "subscription_expired"})]
        revoke_for = [owner.id]

        for u in store.query(Query(USERS).where("storeId", "==", store_id)):
            if u.id == owner.id or u.get("role") == "owner" or u.get("active") is False:
                continue
            updates.append((USERS, u.id, {"active": False, "deactivatedAt": now}))
            revoke_for.append(u.id)
            summary["employees"] += 1

        for uid in revoke_for:
            for s in _active_sessions(store, uid):
                updates.append((SESSIONS, s.id, {"isActive": False, "revokedAt": now}))
                summary["sessions"] += 1

        store.batch_update(updates)
        summary["owners"] += 1
        json_log(
            "info",
            "subscription.expired",
            owner_id=owner.id,
            store_id=store_id,
            users=len(revoke_for),
        )

    json_log("info", "subscription.scan", **summary)
    return summary


def main():
    argparse.ArgumentParser().parse_args()
    run_subscription_expiry_scan(get_store())


if __name__ == "__main__":
    main()
