#!/usr/bin/env python3
"""
Outbox dispatcher.

Claims document change events one at a time and hands them to the
aggregation handlers and bill notifications. Failed events are retried with
exponential backoff and go `dead` after `--max-attempts`.
"""
import argparse
import sys
import time
import traceback
from datetime import datetime, timedelta, timezone
from typing import Optional

from backend.app.db import get_store
from backend.app.logs import json_log
from backend.app.notifications import default_sink, notify_bill_written
from backend.app.reporting.aggregation import (
    BILLS,
    CASH_TRANSACTIONS,
    FAILED,
    aggregate_bill,
    aggregate_cash_transaction,
)
from backend.app.store.base import (
    EVENT_DEAD,
    EVENT_FAILED,
    EVENT_PROCESSED,
    DocumentStore,
    backoff_seconds,
)

MAX_ATTEMPTS_DEFAULT = 5
LEASE_SECONDS_DEFAULT = 300


class AggregationFailed(Exception):
    pass


def next_retry_at_for_attempt(attempt_count: int, event_id: Optional[str] = None, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now + timedelta(seconds=backoff_seconds(attempt_count, event_id, base=1.0, cap=300.0))


def dispatch_event(store: DocumentStore, sink, event: dict) -> str:
    collection = event.get("collection")
    kind = event.get("kind")
    doc_id = str(event.get("docId") or "")
    before = event.get("before")
    after = event.get("after")

    if collection == BILLS and kind == "created":
        status = aggregate_bill(store, doc_id, after)
        if status == FAILED:
            # Redelivery is safe: an aggregated bill comes back as a duplicate.
            raise AggregationFailed(f"bill {doc_id} aggregation failed")
        notify_bill_written(store, sink, doc_id, before, after)
        return status
    if collection == BILLS and kind == "updated":
        notify_bill_written(store, sink, doc_id, before, after)
        return "notified"
    if collection == CASH_TRANSACTIONS and kind == "created":
        status = aggregate_cash_transaction(store, doc_id, after)
        if status == FAILED:
            raise AggregationFailed(f"cash transaction {doc_id} aggregation failed")
        return status

    json_log("info", "events.ignored", event_id=event.get("id"), collection=collection, kind=kind, doc_id=doc_id)
    return "ignored"


def _process_one(store: DocumentStore, sink, max_attempts: int, lease_seconds: int) -> bool:
    e = store.claim_next_event(max_attempts=max_attempts, lease_seconds=lease_seconds)
    if not e:
        return False

    try:
        outcome = dispatch_event(store, sink, e)
    except Exception as ex:
        next_attempt = int(e.get("attemptCount") or 0) + 1
        next_status = EVENT_DEAD if next_attempt >= max_attempts else EVENT_FAILED
        json_log(
            "error",
            "events.failed",
            event_id=e["id"],
            collection=e.get("collection"),
            doc_id=e.get("docId"),
            attempt=next_attempt,
            status=next_status,
            error=str(ex),
        )
        store.finish_event(
            e["id"],
            next_status,
            attempt_count=next_attempt,
            error_message=str(ex),
            next_attempt_at=(next_retry_at_for_attempt(next_attempt, str(e["id"])) if next_status == EVENT_FAILED else None),
        )
        return True

    store.finish_event(e["id"], EVENT_PROCESSED)
    json_log("info", "events.processed", event_id=e["id"], collection=e.get("collection"), outcome=outcome)
    return True


def process_events(
    store: DocumentStore,
    limit: int,
    max_attempts: int = MAX_ATTEMPTS_DEFAULT,
    sink=None,
    lease_seconds: int = LEASE_SECONDS_DEFAULT,
) -> int:
    sink = sink or default_sink()
    processed = 0
    while processed < limit:
        did_one = _process_one(store, sink, max_attempts, lease_seconds)
        if not did_one:
            break
        processed += 1
    return processed


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--max-attempts", type=int, default=MAX_ATTEMPTS_DEFAULT)
    parser.add_argument("--loop", action="store_true", help="Run continuously as a service")
    parser.add_argument("--sleep", type=float, default=1.0, help="Seconds to sleep between loops")
    args = parser.parse_args()

    store = get_store()
    sink = default_sink()
    while True:
        try:
            processed = process_events(store, args.limit, max_attempts=args.max_attempts, sink=sink)
        except Exception as ex:
            json_log("error", "events.loop.error", error=str(ex))
            traceback.print_exc(file=sys.stderr)
            processed = 0
        if not args.loop:
            break
        time.sleep(0 if processed else args.sleep)


if __name__ == "__main__":
    main()
