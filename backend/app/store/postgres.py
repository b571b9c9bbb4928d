"""
Postgres-backed document store.

Documents live in one jsonb table keyed by (collection, id). Every
transaction body runs at SERIALIZABLE isolation, so Postgres detects read/write
conflicts (including predicate reads from shift queries) and we re-execute the
body on SerializationFailure. Writes are folded in Python with apply_update
and written back whole; only the keys owned by the update change.
"""
from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Callable, Optional

from psycopg import errors as pg_errors

from ..logs import json_log
from .base import (
    DESCENDING,
    EVENT_PROCESSED,
    DocumentSnapshot,
    DocumentStore,
    Query,
    Transaction,
    TransactionConflict,
    WATCHED_COLLECTIONS,
    backoff_seconds,
    decode_json,
    encode_json,
    resolve_writes,
)

_SQL_OPS = {"==": "=", "!=": "<>", "<": "<", "<=": "<=", ">": ">", ">=": ">="}
_RETRYABLE = (pg_errors.SerializationFailure, pg_errors.DeadlockDetected)


def build_query_sql(q: Query) -> tuple[str, list]:
    where = ["collection = %s"]
    params: list = [q.collection]
    for segs, op, value in q.filters:
        if op == "in":
            if not value:
                where.append("FALSE")
                continue
            ors = []
            for v in value:
                ors.append("data #> %s::text[] = %s::jsonb")
                params.extend([list(segs), encode_json(v)])
            where.append("(" + " OR ".join(ors) + ")")
            continue
        where.append(f"data #> %s::text[] {_SQL_OPS[op]} %s::jsonb")
        params.extend([list(segs), encode_json(value)])

    order_sql = []
    order_params: list = []
    for segs, direction in q.orders:
        # Missing fields never match an ordered query.
        where.append("data #> %s::text[] IS NOT NULL")
        params.append(list(segs))
        order_sql.append("data #> %s::text[] " + ("DESC" if direction == DESCENDING else "ASC"))
        order_params.append(list(segs))
    order_sql.append("id ASC")

    sql = (
        "SELECT id, version, data::text AS data FROM documents WHERE "
        + " AND ".join(where)
        + " ORDER BY "
        + ", ".join(order_sql)
    )
    params.extend(order_params)
    if q.limit_to is not None:
        sql += " LIMIT %s"
        params.append(q.limit_to)
    return sql, params


def _fetch_doc(cur, collection: str, doc_id: str) -> DocumentSnapshot:
    cur.execute(
        """
        SELECT id, version, data::text AS data
        FROM documents
        WHERE collection = %s AND id = %s
        """,
        (collection, doc_id),
    )
    row = cur.fetchone()
    if not row:
        return DocumentSnapshot(collection, doc_id, None, 0)
    return DocumentSnapshot(collection, doc_id, decode_json(row["data"]), int(row["version"]))


def _run_query(cur, q: Query) -> list[DocumentSnapshot]:
    sql, params = build_query_sql(q)
    cur.execute(sql, params)
    return [
        DocumentSnapshot(q.collection, r["id"], decode_json(r["data"]), int(r["version"]))
        for r in (cur.fetchall() or [])
    ]


def write_changes(cur, writes) -> int:
    changes = resolve_writes(writes, lambda c, i: _fetch_doc(cur, c, i).data)
    for collection, doc_id, before, after in changes:
        cur.execute(
            """
            INSERT INTO documents (collection, id, data, version, created_at, updated_at)
            VALUES (%s, %s, %s::jsonb, 1, now(), now())
            ON CONFLICT (collection, id)
            DO UPDATE SET data = EXCLUDED.data,
                          version = documents.version + 1,
                          updated_at = now()
            """,
            (collection, doc_id, encode_json(after)),
        )
        if collection in WATCHED_COLLECTIONS:
            cur.execute(
                """
                INSERT INTO document_events
                  (id, collection, doc_id, kind, before_json, after_json, status, attempt_count, created_at)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s::jsonb, %s::jsonb, 'pending', 0, now())
                """,
                (
                    collection,
                    doc_id,
                    "created" if before is None else "updated",
                    encode_json(before) if before is not None else None,
                    encode_json(after),
                ),
            )
    return len(changes)


class PostgresTransaction(Transaction):
    def __init__(self, cur):
        super().__init__()
        self._cur = cur

    def _read_doc(self, collection: str, doc_id: str) -> DocumentSnapshot:
        return _fetch_doc(self._cur, collection, doc_id)

    def _run_query(self, q: Query) -> list[DocumentSnapshot]:
        return _run_query(self._cur, q)


class PostgresStore(DocumentStore):
    def __init__(self, pool):
        self._pool = pool

    def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                return _fetch_doc(cur, collection, doc_id)

    def query(self, q: Query) -> list[DocumentSnapshot]:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                return _run_query(cur, q)

    def run_transaction(self, fn: Callable[[Transaction], Any], max_attempts: int = 5):
        attempt = 0
        while True:
            attempt += 1
            try:
                with self._pool.connection() as conn:
                    with conn.transaction():
                        with conn.cursor() as cur:
                            cur.execute("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE")
                            tx = PostgresTransaction(cur)
                            result = fn(tx)
                            write_changes(cur, tx.writes)
                return result
            except _RETRYABLE as ex:
                if attempt >= max_attempts:
                    raise TransactionConflict(str(ex)) from ex
                json_log("warning", "store.transaction.retry", attempt=attempt, error=str(ex))
                time.sleep(backoff_seconds(attempt, base=0.05, cap=2.0))

    def claim_next_event(self, max_attempts: int = 5, lease_seconds: int = 300) -> Optional[dict]:
        with self._pool.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE document_events e
                        SET status = 'processing',
                            leased_until = now() + (%s * interval '1 second')
                        WHERE e.id = (
                          SELECT id
                          FROM document_events
                          WHERE attempt_count < %s
                            AND (
                              status = 'pending'
                              OR (status = 'failed' AND (next_attempt_at IS NULL OR next_attempt_at <= now()))
                              OR (status = 'processing' AND leased_until < now())
                            )
                          ORDER BY
                            CASE WHEN status = 'pending' THEN 0 ELSE 1 END,
                            COALESCE(next_attempt_at, created_at) ASC,
                            created_at ASC
                          LIMIT 1
                          FOR UPDATE SKIP LOCKED
                        )
                        RETURNING e.id, e.collection, e.doc_id, e.kind,
                                  e.before_json::text AS before_json,
                                  e.after_json::text AS after_json,
                                  e.attempt_count
                        """,
                        (lease_seconds, max_attempts),
                    )
                    row = cur.fetchone()
        if not row:
            return None
        return {
            "id": str(row["id"]),
            "collection": row["collection"],
            "docId": row["doc_id"],
            "kind": row["kind"],
            "before": decode_json(row["before_json"]),
            "after": decode_json(row["after_json"]),
            "attemptCount": int(row["attempt_count"] or 0),
        }

    def finish_event(
        self,
        event_id: str,
        status: str,
        attempt_count: Optional[int] = None,
        error_message: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> None:
        with self._pool.connection() as conn:
            with conn.transaction(), conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE document_events
                    SET status = %s,
                        attempt_count = COALESCE(%s, attempt_count),
                        error_message = %s,
                        next_attempt_at = %s,
                        leased_until = NULL,
                        processed_at = CASE WHEN %s THEN now() ELSE processed_at END
                    WHERE id = %s
                    """,
                    (status, attempt_count, error_message, next_attempt_at, status == EVENT_PROCESSED, event_id),
                )
