"""
In-process document store.

Transactions record the version of every document they read and a
fingerprint of every query result; commit re-validates both under the store
lock and raises TransactionConflict when a concurrent commit invalidated the
read set, which makes run_transaction re-execute the body.
"""
from __future__ import annotations

import copy
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from ..logs import json_log
from .base import (
    EVENT_FAILED,
    EVENT_PENDING,
    EVENT_PROCESSED,
    EVENT_PROCESSING,
    DocumentSnapshot,
    DocumentStore,
    Query,
    Transaction,
    TransactionConflict,
    change_event,
    resolve_writes,
)


class MemoryTransaction(Transaction):
    def __init__(self, store: "MemoryStore"):
        super().__init__()
        self._store = store
        self.read_versions: dict[tuple[str, str], int] = {}
        self.query_reads: list[tuple[Query, tuple]] = []

    def _read_doc(self, collection: str, doc_id: str) -> DocumentSnapshot:
        snap = self._store.get(collection, doc_id)
        self.read_versions.setdefault((collection, doc_id), snap.version)
        return snap

    def _run_query(self, q: Query) -> list[DocumentSnapshot]:
        rows = self._store.query(q)
        self.query_reads.append((q, tuple((s.id, s.version) for s in rows)))
        return rows


class MemoryStore(DocumentStore):
    def __init__(self, clock: Optional[Callable[[], datetime]] = None, retry_sleep: float = 0.001):
        self._lock = threading.RLock()
        self._docs: dict[tuple[str, str], tuple[int, dict]] = {}
        self._events: list[dict] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._retry_sleep = retry_sleep

    def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        with self._lock:
            row = self._docs.get((collection, doc_id))
            if row is None:
                return DocumentSnapshot(collection, doc_id, None, 0)
            return DocumentSnapshot(collection, doc_id, copy.deepcopy(row[1]), row[0])

    def query(self, q: Query) -> list[DocumentSnapshot]:
        with self._lock:
            snaps = [
                DocumentSnapshot(c, i, copy.deepcopy(data), version)
                for (c, i), (version, data) in self._docs.items()
                if c == q.collection
            ]
        return q.apply(snaps)

    def run_transaction(self, fn: Callable[[Transaction], Any], max_attempts: int = 5):
        attempt = 0
        while True:
            attempt += 1
            tx = MemoryTransaction(self)
            result = fn(tx)
            try:
                self._commit(tx)
                return result
            except TransactionConflict as ex:
                if attempt >= max_attempts:
                    raise
                json_log("warning", "store.transaction.retry", attempt=attempt, error=str(ex))
                time.sleep(self._retry_sleep * attempt)

    def _fingerprint(self, q: Query) -> tuple:
        return tuple((s.id, s.version) for s in self.query(q))

    def _commit(self, tx: MemoryTransaction) -> None:
        with self._lock:
            for (collection, doc_id), version in tx.read_versions.items():
                row = self._docs.get((collection, doc_id))
                if (row[0] if row else 0) != version:
                    raise TransactionConflict(f"{collection}/{doc_id} changed since read")
            for q, fingerprint in tx.query_reads:
                if self._fingerprint(q) != fingerprint:
                    raise TransactionConflict(f"query on {q.collection} changed since read")

            def _load(collection, doc_id):
                row = self._docs.get((collection, doc_id))
                return copy.deepcopy(row[1]) if row else None

            changes = resolve_writes(tx.writes, _load)
            now = self._clock()
            for collection, doc_id, before, after in changes:
                row = self._docs.get((collection, doc_id))
                self._docs[(collection, doc_id)] = ((row[0] if row else 0) + 1, after)
                event = change_event(collection, doc_id, before, copy.deepcopy(after), now)
                if event:
                    self._events.append({"id": uuid.uuid4().hex, **event})

    def events(self, status: Optional[str] = None) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._events if status is None or e["status"] == status]

    def claim_next_event(self, max_attempts: int = 5, lease_seconds: int = 300) -> Optional[dict]:
        with self._lock:
            now = self._clock()

            def _claimable(e):
                if e["attemptCount"] >= max_attempts:
                    return False
                if e["status"] == EVENT_PENDING:
                    return True
                if e["status"] == EVENT_FAILED:
                    return e["nextAttemptAt"] is None or e["nextAttemptAt"] <= now
                if e["status"] == EVENT_PROCESSING:
                    return e["leasedUntil"] is not None and e["leasedUntil"] < now
                return False

            candidates = [e for e in self._events if _claimable(e)]
            if not candidates:
                return None
            candidates.sort(
                key=lambda e: (
                    0 if e["status"] == EVENT_PENDING else 1,
                    e["nextAttemptAt"] or e["createdAt"],
                    e["createdAt"],
                )
            )
            e = candidates[0]
            e["status"] = EVENT_PROCESSING
            e["leasedUntil"] = now + timedelta(seconds=lease_seconds)
            return copy.deepcopy(e)

    def finish_event(
        self,
        event_id: str,
        status: str,
        attempt_count: Optional[int] = None,
        error_message: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> None:
        with self._lock:
            for e in self._events:
                if e["id"] != event_id:
                    continue
                e["status"] = status
                if attempt_count is not None:
                    e["attemptCount"] = attempt_count
                e["errorMessage"] = error_message
                e["nextAttemptAt"] = next_attempt_at
                e["leasedUntil"] = None
                if status == EVENT_PROCESSED:
                    e["processedAt"] = self._clock()
                return
