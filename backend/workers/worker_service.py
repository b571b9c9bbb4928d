#!/usr/bin/env python3
"""
Long-running worker service.

Drains the document outbox using the same logic as `event_processor.py`, and
runs the daily jobs (low-stock scan, subscription expiry) at fixed local
times. Due jobs are claimed through `job_schedules/{jobCode}` inside a store
transaction, so several worker processes never run the same job twice.
"""

import argparse
import time
import sys
import traceback
from datetime import datetime, time as dtime, timedelta, timezone
from typing import Callable, Optional

from backend.app.config import settings
from backend.app.db import get_store
from backend.app.logs import json_log
from backend.app.notifications import default_sink
from backend.app.reporting.aggregation import as_datetime
from backend.app.reporting.report_dates import store_tz
from backend.app.store.base import DocumentStore, Transaction

from backend.workers.event_processor import MAX_ATTEMPTS_DEFAULT, process_events
from backend.workers.low_stock import run_low_stock_scan
from backend.workers.subscription_expiry import run_subscription_expiry_scan

JOB_SCHEDULES = "job_schedules"
LOW_STOCK_SCAN = "LOW_STOCK_SCAN"
SUBSCRIPTION_EXPIRY = "SUBSCRIPTION_EXPIRY"


def daily_job_specs() -> dict[str, tuple[int, int]]:
    return {
        LOW_STOCK_SCAN: settings.low_stock_scan_at,
        SUBSCRIPTION_EXPIRY: settings.subscription_scan_at,
    }


def next_daily_run(now: datetime, hour: int, minute: int, tz=None) -> datetime:
    """First instant strictly after `now` whose local wall time is hour:minute."""
    zone = store_tz(tz)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_day = now.astimezone(zone).date()
    candidate = datetime.combine(local_day, dtime(hour, minute), tzinfo=zone)
    if candidate <= now:
        candidate = datetime.combine(local_day + timedelta(days=1), dtime(hour, minute), tzinfo=zone)
    return candidate.astimezone(timezone.utc)


def claim_due_job(store: DocumentStore, job_code: str, hour: int, minute: int, now: datetime, tz=None) -> bool:
    def _claim(tx: Transaction) -> bool:
        snap = tx.get(JOB_SCHEDULES, job_code)
        next_run = next_daily_run(now, hour, minute, tz)
        if not snap.exists:
            # First sighting schedules the job; it runs at its next slot.
            tx.set(
                JOB_SCHEDULES,
                job_code,
                {"jobCode": job_code, "nextRunAt": next_run, "lastRunAt": None, "lastStatus": None, "lastError": None},
            )
            return False
        due_at = snap.get("nextRunAt")
        if due_at is not None and as_datetime(due_at) > now:
            return False
        tx.update(JOB_SCHEDULES, job_code, {"nextRunAt": next_run, "lastRunAt": now, "lastStatus": "running"})
        return True

    return store.run_transaction(_claim)


def record_job_finish(store: DocumentStore, job_code: str, status: str, error_message: Optional[str] = None):
    store.update(
        JOB_SCHEDULES,
        job_code,
        {"lastStatus": status, "lastError": error_message, "lastFinishedAt": datetime.now(timezone.utc)},
    )


def execute_job(store: DocumentStore, job_code: str, sink, now: datetime):
    if job_code == LOW_STOCK_SCAN:
        return run_low_stock_scan(store, sink)
    if job_code == SUBSCRIPTION_EXPIRY:
        return run_subscription_expiry_scan(store, now)
    raise ValueError(f"unknown job_code: {job_code}")


def run_due_jobs(
    store: DocumentStore,
    sink,
    now: Optional[datetime] = None,
    tz=None,
    specs: Optional[dict[str, tuple[int, int]]] = None,
) -> int:
    now = now or datetime.now(timezone.utc)
    ran = 0
    for job_code, (hour, minute) in (specs or daily_job_specs()).items():
        if not claim_due_job(store, job_code, hour, minute, now, tz):
            continue
        try:
            result = execute_job(store, job_code, sink, now)
            record_job_finish(store, job_code, "success")
            json_log("info", "worker.job.done", job_code=job_code, result=result)
        except Exception as ex:
            record_job_finish(store, job_code, "failed", error_message=str(ex))
            json_log("error", "worker.job.failed", job_code=job_code, error=str(ex))
            traceback.print_exc(file=sys.stderr)
        ran += 1
    return ran


def run_once(store: DocumentStore, sink, limit: int, max_attempts: int, clock: Callable[[], datetime]) -> bool:
    did_work = False
    try:
        if process_events(store, limit, max_attempts=max_attempts, sink=sink):
            did_work = True
    except Exception as ex:
        # Never crash the worker loop due to outbox processing errors.
        json_log("error", "worker.outbox.error", error=str(ex))
        traceback.print_exc(file=sys.stderr)

    try:
        if run_due_jobs(store, sink, now=clock()):
            did_work = True
    except Exception as ex:
        json_log("error", "worker.jobs.error", error=str(ex))
        traceback.print_exc(file=sys.stderr)
    return did_work


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--limit", type=int, default=200)
    parser.add_argument("--max-attempts", type=int, default=MAX_ATTEMPTS_DEFAULT)
    parser.add_argument("--sleep", type=float, default=1.0)
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    store = get_store()
    sink = default_sink()
    json_log("info", "worker.start", backend=settings.store_backend, timezone=settings.store_timezone)
    while True:
        did_work = run_once(store, sink, args.limit, args.max_attempts, lambda: datetime.now(timezone.utc))
        if args.once:
            break
        # If we processed anything, loop again quickly; otherwise back off.
        time.sleep(0 if did_work else args.sleep)


if __name__ == "__main__":
    main()
