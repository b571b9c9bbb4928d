"""
Document store contract used by the aggregation engine.

Backends provide transactional reads (documents and queries) followed by
buffered writes, committed atomically with optimistic conflict detection.
Nested maps are updated through field paths so concurrent writers that own
different keys of the same map never clobber each other.
"""
from __future__ import annotations

import copy
import hashlib
import json
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Union

ASCENDING = "asc"
DESCENDING = "desc"

# Writes to these collections append a change event to the outbox.
WATCHED_COLLECTIONS = ("bills", "manual_cash_transactions")

EVENT_PENDING = "pending"
EVENT_PROCESSING = "processing"
EVENT_PROCESSED = "processed"
EVENT_FAILED = "failed"
EVENT_DEAD = "dead"

_OPS = {"==", "!=", "<", "<=", ">", ">=", "in"}
_MISSING = object()
_TS_KEY = "$ts"
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

FieldPath = Union[str, tuple]


class StoreError(Exception):
    pass


class TransactionConflict(StoreError):
    pass


class DocumentNotFound(StoreError):
    pass


class FieldPathCollision(StoreError, ValueError):
    pass


class ReadAfterWrite(StoreError):
    pass


class Increment:
    __slots__ = ("amount",)

    def __init__(self, amount):
        self.amount = Decimal(str(amount))

    def __eq__(self, other):
        return isinstance(other, Increment) and other.amount == self.amount

    def __repr__(self):
        return f"Increment({self.amount})"


def split_path(path: FieldPath) -> tuple[str, ...]:
    if isinstance(path, tuple):
        segs = tuple(str(s) for s in path)
    else:
        segs = tuple(str(path).split("."))
    if not segs or any(s == "" for s in segs):
        raise ValueError(f"invalid field path: {path!r}")
    return segs


def get_path(data: Optional[dict], path: FieldPath, default=None):
    node: Any = data
    for seg in split_path(path):
        if not isinstance(node, dict) or seg not in node:
            return default
        node = node[seg]
    return node


def _as_number(v) -> Decimal:
    if isinstance(v, bool) or not isinstance(v, (int, float, Decimal)):
        return Decimal("0")
    return Decimal(str(v))


def resolve_transforms(data: dict) -> dict:
    # A full-document write carries increments as plain amounts.
    out = {}
    for k, v in (data or {}).items():
        if isinstance(v, Increment):
            out[k] = v.amount
        elif isinstance(v, dict):
            out[k] = resolve_transforms(v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def apply_update(data: Optional[dict], fields: dict) -> dict:
    paths = [(split_path(k), v) for k, v in fields.items()]
    ordered = sorted(p for p, _ in paths)
    for a, b in zip(ordered, ordered[1:]):
        if b[: len(a)] == a:
            raise FieldPathCollision(f"field path collision: {'.'.join(a)} / {'.'.join(b)}")

    out = copy.deepcopy(data or {})
    for segs, value in paths:
        node = out
        for seg in segs[:-1]:
            nxt = node.get(seg)
            if not isinstance(nxt, dict):
                nxt = {}
                node[seg] = nxt
            node = nxt
        last = segs[-1]
        if isinstance(value, Increment):
            node[last] = _as_number(node.get(last)) + value.amount
        elif isinstance(value, dict):
            node[last] = resolve_transforms(value)
        else:
            node[last] = copy.deepcopy(value)
    return out


@dataclass
class DocumentSnapshot:
    collection: str
    id: str
    data: Optional[dict]
    version: int = 0

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, path: FieldPath, default=None):
        return get_path(self.data, path, default)

    def to_dict(self) -> dict:
        return copy.deepcopy(self.data) if self.data is not None else {}


def _compare(value, op: str, operand) -> bool:
    try:
        if op == "==":
            return value == operand
        if op == "!=":
            return value != operand
        if op == "<":
            return value < operand
        if op == "<=":
            return value <= operand
        if op == ">":
            return value > operand
        if op == ">=":
            return value >= operand
        if op == "in":
            return value in operand
    except TypeError:
        return False
    raise ValueError(f"unsupported operator {op}")


def _null_first(v):
    return (v is not None, v)


@dataclass(frozen=True)
class Query:
    collection: str
    filters: tuple = ()
    orders: tuple = ()
    limit_to: Optional[int] = None

    def where(self, field: FieldPath, op: str, value) -> "Query":
        if op not in _OPS:
            raise ValueError(f"unsupported operator {op}")
        if op == "in":
            value = tuple(value)
        return replace(self, filters=self.filters + ((split_path(field), op, value),))

    def order_by(self, field: FieldPath, direction: str = ASCENDING) -> "Query":
        if direction not in (ASCENDING, DESCENDING):
            raise ValueError(f"invalid direction {direction}")
        return replace(self, orders=self.orders + ((split_path(field), direction),))

    def limit(self, n: int) -> "Query":
        return replace(self, limit_to=max(0, int(n)))

    def matches(self, data: Optional[dict]) -> bool:
        if data is None:
            return False
        for segs, op, operand in self.filters:
            value = get_path(data, segs, _MISSING)
            if value is _MISSING or not _compare(value, op, operand):
                return False
        for segs, _direction in self.orders:
            if get_path(data, segs, _MISSING) is _MISSING:
                return False
        return True

    def apply(self, snapshots: Iterable[DocumentSnapshot]) -> list[DocumentSnapshot]:
        rows = sorted((s for s in snapshots if self.matches(s.data)), key=lambda s: s.id)
        for segs, direction in reversed(self.orders):
            # Explicit nulls sort before any value.
            rows.sort(key=lambda s: _null_first(get_path(s.data, segs)), reverse=(direction == DESCENDING))
        if self.limit_to is not None:
            rows = rows[: self.limit_to]
        return rows


@dataclass
class WriteOp:
    kind: str
    collection: str
    doc_id: str
    data: dict


class Transaction:
    """Buffers writes; every read must precede the first write."""

    def __init__(self):
        self._writes: list[WriteOp] = []

    def _check_reads(self):
        if self._writes:
            raise ReadAfterWrite("transactions require all reads to be executed before all writes")

    def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        self._check_reads()
        return self._read_doc(collection, doc_id)

    def query(self, q: Query) -> list[DocumentSnapshot]:
        self._check_reads()
        return self._run_query(q)

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self._writes.append(WriteOp("set", collection, doc_id, dict(data)))

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        if fields:
            self._writes.append(WriteOp("update", collection, doc_id, dict(fields)))

    @property
    def writes(self) -> list[WriteOp]:
        return list(self._writes)

    def _read_doc(self, collection: str, doc_id: str) -> DocumentSnapshot:
        raise NotImplementedError

    def _run_query(self, q: Query) -> list[DocumentSnapshot]:
        raise NotImplementedError


def resolve_writes(writes: list[WriteOp], load: Callable[[str, str], Optional[dict]]):
    """
    Folds buffered writes over the current documents.
    Returns [(collection, doc_id, before, after)] in first-touch order.
    """
    befores: dict[tuple[str, str], Optional[dict]] = {}
    state: dict[tuple[str, str], Optional[dict]] = {}
    for w in writes:
        key = (w.collection, w.doc_id)
        if key not in state:
            befores[key] = load(w.collection, w.doc_id)
            state[key] = copy.deepcopy(befores[key])
        if w.kind == "set":
            state[key] = resolve_transforms(w.data)
        else:
            if state[key] is None:
                raise DocumentNotFound(f"{w.collection}/{w.doc_id}")
            state[key] = apply_update(state[key], w.data)
    return [(c, i, befores[(c, i)], state[(c, i)]) for (c, i) in state]


def change_event(collection: str, doc_id: str, before: Optional[dict], after: dict, now: datetime) -> Optional[dict]:
    if collection not in WATCHED_COLLECTIONS:
        return None
    return {
        "collection": collection,
        "docId": doc_id,
        "kind": "created" if before is None else "updated",
        "before": before,
        "after": after,
        "status": EVENT_PENDING,
        "attemptCount": 0,
        "createdAt": now,
        "nextAttemptAt": None,
        "leasedUntil": None,
        "errorMessage": None,
    }


def backoff_seconds(attempt: int, key: Optional[str] = None, base: float = 1.0, cap: float = 300.0) -> float:
    delay = min(cap, base * (2 ** max(attempt - 1, 0)))
    if key:
        # Deterministic per-key jitter to reduce synchronized retry storms.
        digest = hashlib.sha1(f"{key}:{attempt}".encode("utf-8")).hexdigest()
        delay = min(cap, delay + (int(digest[:8], 16) % 1000) / 1000.0 * base)
    return delay


def format_ts(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(raw: str) -> datetime:
    return datetime.strptime(raw, _TS_FORMAT).replace(tzinfo=timezone.utc)


def decimal_literal(v: Decimal) -> str:
    if not v.is_finite():
        raise ValueError(f"not JSON serializable: {v}")
    if v == v.to_integral_value():
        return str(int(v))
    return format(v, "f")


class DocumentEncoder(json.JSONEncoder):
    """
    Encodes document data for jsonb columns.

    Decimals are written as exact number literals (never through float) and
    datetimes as {"$ts": "..."} so `decode_json` restores both.
    """

    def __init__(self, **kw):
        kw.setdefault("ensure_ascii", False)
        super().__init__(**kw)

    def default(self, o):
        if isinstance(o, datetime):
            return {_TS_KEY: format_ts(o)}
        if isinstance(o, Increment):
            return o.amount
        return super().default(o)

    def encode(self, o) -> str:
        if isinstance(o, Decimal):
            return decimal_literal(o)
        if isinstance(o, dict):
            items = (f"{self._scalar(str(k))}: {self.encode(v)}" for k, v in o.items())
            return "{" + ", ".join(items) + "}"
        if isinstance(o, (list, tuple)):
            return "[" + ", ".join(self.encode(v) for v in o) + "]"
        if o is None or isinstance(o, (str, int, float)):
            return self._scalar(o)
        return self.encode(self.default(o))

    def _scalar(self, o) -> str:
        return json.dumps(o, ensure_ascii=self.ensure_ascii)

    def iterencode(self, o, _one_shot=False):
        yield self.encode(o)


def _json_object_hook(obj: dict):
    if len(obj) == 1 and _TS_KEY in obj and isinstance(obj[_TS_KEY], str):
        return parse_ts(obj[_TS_KEY])
    return obj


def encode_json(value) -> str:
    return DocumentEncoder().encode(value)


def decode_json(text: Optional[str]):
    if text is None:
        return None
    return json.loads(text, parse_float=Decimal, object_hook=_json_object_hook)


class DocumentStore:
    def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        raise NotImplementedError

    def query(self, q: Query) -> list[DocumentSnapshot]:
        raise NotImplementedError

    def run_transaction(self, fn: Callable[[Transaction], Any], max_attempts: int = 5):
        raise NotImplementedError

    def claim_next_event(self, max_attempts: int = 5, lease_seconds: int = 300) -> Optional[dict]:
        raise NotImplementedError

    def finish_event(
        self,
        event_id: str,
        status: str,
        attempt_count: Optional[int] = None,
        error_message: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> None:
        raise NotImplementedError

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self.run_transaction(lambda tx: tx.set(collection, doc_id, data))

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        self.run_transaction(lambda tx: tx.update(collection, doc_id, fields))

    def add(self, collection: str, data: dict) -> str:
        doc_id = self.new_id()
        self.set(collection, doc_id, data)
        return doc_id

    def batch_update(self, updates: Iterable[tuple[str, str, dict]]) -> int:
        # Bulk sweep writes: each document is written atomically, the batch is not.
        n = 0
        for collection, doc_id, fields in updates:
            self.update(collection, doc_id, fields)
            n += 1
        return n
