import os
import sqlite3
from contextlib import contextmanager
from typing import Optional

from .config import DEFAULT_CONFIG

DB_FILE = os.environ.get("CRONCTL_DB", "cronctl.db")

# seconds sqlite waits on a locked database before raising
BUSY_TIMEOUT = 30

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    name TEXT PRIMARY KEY,
    cron TEXT,
    run_at TEXT,
    timezone TEXT NOT NULL DEFAULT 'UTC',
    url TEXT NOT NULL,
    method TEXT NOT NULL DEFAULT 'POST',
    payload TEXT,
    headers TEXT NOT NULL DEFAULT '{}',
    max_retries INTEGER NOT NULL,
    retry_backoff_ms INTEGER NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    next_run_at TEXT,
    last_run_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK ((cron IS NULL) != (run_at IS NULL))
);

CREATE INDEX IF NOT EXISTS idx_jobs_enabled_next ON jobs(enabled, next_run_at);

CREATE TABLE IF NOT EXISTS runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name TEXT NOT NULL,
    scheduled_for TEXT NOT NULL,
    state TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 0,
    url TEXT NOT NULL,
    method TEXT NOT NULL,
    payload TEXT,
    headers TEXT NOT NULL DEFAULT '{}',
    max_retries INTEGER NOT NULL,
    retry_backoff_ms INTEGER NOT NULL,
    claim_token TEXT,
    lease_owner TEXT,
    lease_expires_at TEXT,
    next_attempt_at TEXT,
    last_error TEXT,
    response_status INTEGER,
    response_body TEXT,
    duration_seconds REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    finished_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_runs_one_active
    ON runs(job_name) WHERE state NOT IN ('succeeded', 'failed_terminal');
CREATE INDEX IF NOT EXISTS idx_runs_state_lease ON runs(state, lease_expires_at);
CREATE INDEX IF NOT EXISTS idx_runs_state_next ON runs(state, next_attempt_at);

CREATE TABLE IF NOT EXISTS dispatch_tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL,
    body TEXT NOT NULL,
    visible_at TEXT NOT NULL,
    consumer TEXT,
    deliveries INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_dispatch_visible ON dispatch_tasks(visible_at);
CREATE INDEX IF NOT EXISTS idx_dispatch_run ON dispatch_tasks(run_id);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None):
    conn = sqlite3.connect(path or DB_FILE, timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    with conn:
        # seed defaults
        for k, v in DEFAULT_CONFIG.items():
            conn.execute(
                "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
            )
    conn.close()


@contextmanager
def immediate(conn):
    """Write transaction that takes the database write lock up front."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()
