#!/usr/bin/env python3
import argparse
import os
import sys

import psycopg

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "db", "migrations")


def migration_files(path: str = MIGRATIONS_DIR) -> list[str]:
    if not os.path.isdir(path):
        raise RuntimeError(f"Missing migrations dir: {path}")
    return [os.path.join(path, n) for n in sorted(os.listdir(path)) if n.endswith(".sql")]


def apply_schema(conn, files) -> int:
    # Every migration is written with IF NOT EXISTS, so re-running is safe.
    n = 0
    with conn.transaction():
        with conn.cursor() as cur:
            for p in files:
                with open(p, "r", encoding="utf-8") as f:
                    cur.execute(f.read())
                n += 1
    return n


def main() -> int:
    parser = argparse.ArgumentParser(description="Apply the document store schema to Postgres.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or "postgresql://localhost/fourcash",
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    args = parser.parse_args()

    try:
        files = migration_files()
    except RuntimeError as ex:
        print(str(ex), file=sys.stderr)
        return 2

    with psycopg.connect(args.db, autocommit=True) as conn:
        n = apply_schema(conn, files)
    print(f"OK ({n} files)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
