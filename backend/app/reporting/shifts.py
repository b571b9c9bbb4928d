from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..logs import json_log
from ..store.base import DESCENDING, DocumentStore, Query, Transaction

SHIFTS = "employee_shifts"


@dataclass(frozen=True)
class ShiftResolution:
    shift_id: str
    start_time: datetime
    is_new: bool


def _shift_query(store_id: str, user_id: str, report_key: str, status: str, order_field: str) -> Query:
    return (
        Query(SHIFTS)
        .where("storeId", "==", store_id)
        .where("userId", "==", user_id)
        .where("reportDateKey", "==", report_key)
        .where("status", "==", status)
        .order_by(order_field, DESCENDING)
        .limit(1)
    )


def open_shift_query(store_id: str, user_id: str, report_key: str) -> Query:
    return _shift_query(store_id, user_id, report_key, "open", "startTime")


def closed_shift_query(store_id: str, user_id: str, report_key: str) -> Query:
    return _shift_query(store_id, user_id, report_key, "closed", "endTime")


def _chained_start(tx: Transaction, store_id: str, user_id: str, report_key: str, day_start: datetime) -> datetime:
    # A new shift starts where the last closed one ended.
    closed = tx.query(closed_shift_query(store_id, user_id, report_key))
    if closed and closed[0].get("endTime"):
        return closed[0].get("endTime")
    return day_start


def resolve_shift(
    tx: Transaction,
    store: DocumentStore,
    store_id: str,
    user_id: str,
    report_key: str,
    client_shift_id: Optional[str],
    day_start: datetime,
) -> ShiftResolution:
    """
    Picks the shift an event belongs to, reading inside the aggregation transaction.

    Order: the client-supplied shift when it exists, else the newest open shift
    of (store, user, business day), else a new shift chained to the newest
    closed one. A client id that does not resolve still names the new shift.
    """
    requested = str(client_shift_id or "").strip()
    if requested:
        snap = tx.get(SHIFTS, requested)
        if snap.exists:
            if snap.get("storeId") != store_id or snap.get("userId") != user_id:
                # Still booked under the requested shift.
                json_log(
                    "warning",
                    "shift.client_id_owner_mismatch",
                    store_id=store_id,
                    user_id=user_id,
                    shift_id=requested,
                    shift_store_id=snap.get("storeId"),
                    shift_user_id=snap.get("userId"),
                )
            return ShiftResolution(requested, snap.get("startTime") or day_start, False)
        json_log(
            "warning",
            "shift.client_id_not_found",
            store_id=store_id,
            user_id=user_id,
            shift_id=requested,
            report_date=report_key,
        )
        start = _chained_start(tx, store_id, user_id, report_key, day_start)
        return ShiftResolution(requested, start, True)

    open_rows = tx.query(open_shift_query(store_id, user_id, report_key))
    if open_rows:
        row = open_rows[0]
        return ShiftResolution(row.id, row.get("startTime") or day_start, False)

    start = _chained_start(tx, store_id, user_id, report_key, day_start)
    return ShiftResolution(store.new_id(), start, True)


def shift_document(store_id: str, user_id: str, user_name: str, report_key: str, start_time: datetime) -> dict:
    return {
        "storeId": store_id,
        "userId": user_id,
        "userName": user_name,
        "reportDateKey": report_key,
        "startTime": start_time,
        "endTime": None,
        "status": "open",
        "openingBalance": 0,
    }
