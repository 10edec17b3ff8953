"""
SQLite connection and schema migrations.

One process-wide connection in autocommit mode; multi-statement writes go
through transaction(), which takes the write lock up front (BEGIN IMMEDIATE)
so conditional updates are serialized across workers sharing the file.
"""
import os
import sqlite3
import logging
from contextlib import contextmanager
from pathlib import Path
from threading import Lock, RLock
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_PATH = "data/mediaflow.db"

# Applied in order; PRAGMA user_version records how many have run.
MIGRATIONS = [
    """
    CREATE TABLE users (
        user_id TEXT PRIMARY KEY,
        plan TEXT NOT NULL DEFAULT 'free',
        credits INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    CREATE TABLE credit_ledger (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL REFERENCES users(user_id),
        delta INTEGER NOT NULL,
        reason TEXT NOT NULL,
        related_job_id TEXT,
        created_at TEXT NOT NULL
    );
    CREATE INDEX idx_credit_ledger_job ON credit_ledger(related_job_id);
    """,
    """
    CREATE TABLE media_jobs (
        job_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL,
        idempotency_key TEXT,
        cancel_requested INTEGER NOT NULL DEFAULT 0,
        snapshot TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    CREATE INDEX idx_media_jobs_user ON media_jobs(user_id, created_at);
    CREATE INDEX idx_media_jobs_status ON media_jobs(status, updated_at);
    CREATE UNIQUE INDEX idx_media_jobs_idempotency
        ON media_jobs(user_id, idempotency_key)
        WHERE idempotency_key IS NOT NULL;
    """,
    """
    CREATE TABLE settlement_issues (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        held_output_ref TEXT,
        message TEXT NOT NULL,
        resolved INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        resolved_at TEXT
    );
    CREATE INDEX idx_settlement_issues_job ON settlement_issues(job_id);
    """,
]

_lock = Lock()
_write_lock = RLock()
_connection: Optional[sqlite3.Connection] = None


def get_database_path() -> str:
    return os.environ.get("DATABASE_PATH", DEFAULT_DATABASE_PATH)


def get_connection() -> sqlite3.Connection:
    """Shared connection, opened and migrated on first use."""
    global _connection

    with _lock:
        if _connection is None:
            path = get_database_path()
            if path != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute("PRAGMA busy_timeout=5000")
            migrate(conn)

            logger.info(f"SQLite database ready: {path}")
            _connection = conn

        return _connection


def migrate(conn: sqlite3.Connection) -> int:
    """Apply pending migrations. Returns the resulting schema version."""
    version = conn.execute("PRAGMA user_version").fetchone()[0]

    for number, script in enumerate(MIGRATIONS[version:], start=version + 1):
        conn.executescript(script)
        conn.execute(f"PRAGMA user_version = {number}")
        logger.info(f"Applied schema migration {number}")

    return len(MIGRATIONS)


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    conn = get_connection()
    # Threads share the connection, so only one may hold a transaction on it.
    with _write_lock:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except Exception:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")


def close_connection() -> None:
    global _connection

    with _lock:
        if _connection is not None:
            _connection.close()
            _connection = None
