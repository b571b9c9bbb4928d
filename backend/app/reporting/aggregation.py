from __future__ import annotations

import sys
import traceback
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from ..logs import json_log
from ..store.base import DocumentStore, Transaction
from .bill_decomposer import decompose_bill, is_aggregatable_bill
from .report_dates import ReportDate, resolve_report_date
from .report_merge import REPORTS, ReportDelta, merge_into_report, report_id
from .shifts import SHIFTS, resolve_shift, shift_document

BILLS = "bills"
CASH_TRANSACTIONS = "manual_cash_transactions"

PROCESSED = "processed"
SKIPPED = "skipped"
DUPLICATE = "duplicate"
FAILED = "failed"


def as_datetime(v) -> datetime:
    if isinstance(v, datetime):
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)
    if isinstance(v, str) and v.strip():
        dt = datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    raise ValueError(f"invalid timestamp: {v!r}")


def _aggregate(
    store: DocumentStore,
    *,
    collection: str,
    doc_id: str,
    store_id: str,
    user_id: str,
    user_name: str,
    report_date: ReportDate,
    client_shift_id: Optional[str],
    delta: ReportDelta,
):
    def _body(tx: Transaction):
        # Reads.
        source = tx.get(collection, doc_id)
        if not source.exists:
            return SKIPPED, None
        if source.get("reportDateKey"):
            # Redelivered event; this document is already in a report.
            return DUPLICATE, source.get("shiftId")
        shift = resolve_shift(
            tx, store, store_id, user_id, report_date.key, client_shift_id, report_date.day_start
        )
        report = tx.get(REPORTS, report_id(store_id, report_date.key))

        # Writes.
        if shift.is_new:
            tx.set(SHIFTS, shift.shift_id, shift_document(store_id, user_id, user_name, report_date.key, shift.start_time))
        merge_into_report(tx, report, store_id, report_date, shift, user_id, user_name, delta)
        tx.update(collection, doc_id, {"reportDateKey": report_date.key, "shiftId": shift.shift_id})
        return PROCESSED, shift.shift_id

    return store.run_transaction(_body)


def aggregate_bill(store: DocumentStore, bill_id: str, bill: Optional[dict], tz=None, cash_prefix: Optional[str] = None) -> str:
    if not bill or bill.get("status") != "completed":
        return SKIPPED
    if not is_aggregatable_bill(bill):
        json_log("warning", "aggregate.bill.missing_fields", bill_id=bill_id)
        return SKIPPED

    store_id = str(bill["storeId"])
    try:
        report_date = resolve_report_date(store, store_id, as_datetime(bill["createdAt"]), tz)
        delta = ReportDelta.from_bill(decompose_bill(bill, cash_prefix))
        status, shift_id = _aggregate(
            store,
            collection=BILLS,
            doc_id=bill_id,
            store_id=store_id,
            user_id=str(bill["createdByUid"]),
            user_name=str(bill["createdByName"]),
            report_date=report_date,
            client_shift_id=bill.get("shiftId"),
            delta=delta,
        )
    except Exception as ex:
        json_log("error", "aggregate.bill.failed", bill_id=bill_id, store_id=store_id, error=str(ex))
        traceback.print_exc(file=sys.stderr)
        return FAILED

    json_log(
        "info",
        "aggregate.bill." + status,
        bill_id=bill_id,
        store_id=store_id,
        report_date=report_date.key,
        shift_id=shift_id,
    )
    return status


def cash_transaction_delta(tx_doc: dict) -> Optional[ReportDelta]:
    try:
        amount = Decimal(str(tx_doc.get("amount") or 0))
    except InvalidOperation:
        return None
    if amount == 0:
        return None
    kind = tx_doc.get("type")
    if kind not in ("revenue", "expense"):
        return None
    return ReportDelta(
        totals={
            "totalOtherRevenue": amount if kind == "revenue" else Decimal("0"),
            "totalOtherExpense": amount if kind == "expense" else Decimal("0"),
        }
    )


def aggregate_cash_transaction(store: DocumentStore, tx_id: str, tx_doc: Optional[dict], tz=None) -> str:
    if not tx_doc or tx_doc.get("status") != "completed":
        return SKIPPED
    required = ("storeId", "date", "userId", "user")
    if not all(tx_doc.get(k) for k in required) or tx_doc.get("amount") is None:
        json_log("warning", "aggregate.cash_tx.missing_fields", tx_id=tx_id)
        return SKIPPED
    delta = cash_transaction_delta(tx_doc)
    if delta is None:
        return SKIPPED

    store_id = str(tx_doc["storeId"])
    try:
        report_date = resolve_report_date(store, store_id, as_datetime(tx_doc["date"]), tz)
        status, shift_id = _aggregate(
            store,
            collection=CASH_TRANSACTIONS,
            doc_id=tx_id,
            store_id=store_id,
            user_id=str(tx_doc["userId"]),
            user_name=str(tx_doc["user"]),
            report_date=report_date,
            client_shift_id=tx_doc.get("shiftId"),
            delta=delta,
        )
    except Exception as ex:
        json_log("error", "aggregate.cash_tx.failed", tx_id=tx_id, store_id=store_id, error=str(ex))
        traceback.print_exc(file=sys.stderr)
        return FAILED

    json_log(
        "info",
        "aggregate.cash_tx." + status,
        tx_id=tx_id,
        store_id=store_id,
        report_date=report_date.key,
        shift_id=shift_id,
    )
    return status


def close_shift(store: DocumentStore, shift_id: str, store_id: str, end_time: Optional[datetime] = None) -> dict:
    """
    Closes an open shift and mirrors status/endTime into its report entry.
    Raises LookupError for an unknown shift and ValueError when it is not open.
    """
    end_time = end_time or datetime.now(timezone.utc)

    def _body(tx: Transaction):
        snap = tx.get(SHIFTS, shift_id)
        if not snap.exists or snap.get("storeId") != store_id:
            raise LookupError("shift not found")
        if snap.get("status") != "open":
            raise ValueError("shift is not open")
        report = tx.get(REPORTS, report_id(store_id, snap.get("reportDateKey")))

        tx.update(SHIFTS, shift_id, {"status": "closed", "endTime": end_time})
        if report.exists and report.get(("shifts", shift_id)) is not None:
            tx.update(
                REPORTS,
                report.id,
                {("shifts", shift_id, "status"): "closed", ("shifts", shift_id, "endTime"): end_time},
            )
        return {"id": shift_id, "status": "closed", "endTime": end_time, "reportDateKey": snap.get("reportDateKey")}

    return store.run_transaction(_body)
