#!/usr/bin/env python3
"""
Database migration runner.

Usage:
    python3 db/migrate.py            # apply pending migrations
    python3 db/migrate.py --status   # list applied / pending, change nothing

Connects with DATABASE_URL, or the PG_* variables the portal uses when it is
unset. Files in db/migrations/ are applied in numeric prefix order, each in
its own transaction, and recorded in schema_migrations.
"""

import argparse
import logging
import os
import re
import sys
from pathlib import Path

import psycopg2

logging.basicConfig(
    level=logging.INFO,
    format='{"ts":"%(asctime)s","level":"%(levelname)s","service":"migrator","msg":"%(message)s"}',
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger("migrator")

MIGRATIONS_DIR = Path(__file__).parent / "migrations"
_VERSION_RE = re.compile(r"^(\d+)_[\w-]+\.sql$")

CREATE_TRACKING_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version     TEXT        NOT NULL PRIMARY KEY,
    filename    TEXT        NOT NULL,
    applied_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


class MigrationError(RuntimeError):
    pass


def connection_kwargs() -> dict:
    url = os.environ.get("DATABASE_URL")
    if url:
        return {"dsn": url}
    return {
        "host": os.environ.get("PG_HOST", "localhost"),
        "port": int(os.environ.get("PG_PORT", "5432")),
        "dbname": os.environ.get("PG_DB", "mechatronics"),
        "user": os.environ.get("PG_USER", "mechatronics"),
        "password": os.environ.get("PG_PASS", "mechatronics_dev"),
    }


def migration_files(directory: Path = MIGRATIONS_DIR) -> list[tuple[str, Path]]:
    """(version, path) pairs sorted by numeric version. Duplicate versions are an error."""
    found: dict[str, Path] = {}
    for path in directory.glob("*.sql"):
        match = _VERSION_RE.match(path.name)
        if not match:
            logger.warning(f"Ignoring {path.name}: expected NNN_name.sql")
            continue
        version = match.group(1)
        if version in found:
            raise MigrationError(f"Duplicate migration version {version}: {found[version].name}, {path.name}")
        found[version] = path
    return sorted(found.items(), key=lambda item: int(item[0]))


def applied_versions(conn) -> set[str]:
    with conn.cursor() as cur:
        cur.execute(CREATE_TRACKING_TABLE)
        cur.execute("SELECT version FROM schema_migrations")
        rows = cur.fetchall()
    conn.commit()
    return {row[0] for row in rows}


def pending_migrations(conn, directory: Path = MIGRATIONS_DIR) -> list[tuple[str, Path]]:
    done = applied_versions(conn)
    return [(v, p) for v, p in migration_files(directory) if v not in done]


def apply_migration(conn, version: str, path: Path) -> None:
    sql = path.read_text(encoding="utf-8")
    try:
        with conn.cursor() as cur:
            cur.execute(sql)
            cur.execute(
                "INSERT INTO schema_migrations (version, filename) VALUES (%s, %s)",
                (version, path.name),
            )
        conn.commit()
    except psycopg2.Error as exc:
        conn.rollback()
        raise MigrationError(f"{path.name}: {exc}") from exc


def run_migrations(conn, directory: Path = MIGRATIONS_DIR) -> int:
    conn.autocommit = False
    pending = pending_migrations(conn, directory)
    if not pending:
        logger.info("Database is up to date")
        return 0
    for version, path in pending:
        logger.info(f"Applying {path.name}")
        apply_migration(conn, version, path)
    return len(pending)


def print_status(conn, directory: Path = MIGRATIONS_DIR) -> None:
    done = applied_versions(conn)
    for version, path in migration_files(directory):
        state = "applied" if version in done else "pending"
        print(f"{state:8} {path.name}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Apply SQL migrations in db/migrations")
    parser.add_argument("--status", action="store_true", help="list migrations without applying")
    args = parser.parse_args(argv)

    conn = psycopg2.connect(**connection_kwargs())
    try:
        if args.status:
            print_status(conn)
            return 0
        applied = run_migrations(conn)
        logger.info(f"Migration complete. {applied} migration(s) applied.")
        return 0
    except MigrationError as exc:
        logger.error(f"Migration FAILED: {exc}")
        return 1
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
