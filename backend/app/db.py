import os
from psycopg.rows import dict_row
from contextlib import contextmanager

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings
from .store.base import DocumentStore
from .store.memory import MemoryStore
from .store.postgres import PostgresStore

DATABASE_URL = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or settings.db_url

def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default

# Pool sizing defaults are conservative for local/dev. Override in prod via env:
# - DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)

# Created on first use so importing the app never opens connections.
_pool = None
_store = None


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        _pool = ConnectionPool(
            conninfo=DATABASE_URL,
            min_size=_POOL_MIN,
            max_size=_POOL_MAX,
            kwargs={"row_factory": dict_row},
            open=True,
        )
    return _pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # - commit on success
    # - rollback on exception
    # - return connection to pool
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_get_pool())


def get_store() -> DocumentStore:
    global _store
    if _store is None:
        if settings.store_backend == "memory":
            _store = MemoryStore()
        else:
            _store = PostgresStore(_get_pool())
    return _store


def close_pools() -> None:
    # Best-effort shutdown hook (e.g. uvicorn shutdown).
    global _pool
    if _pool is None:
        return
    try:
        _pool.close()
    except Exception:
        pass
    _pool = None
