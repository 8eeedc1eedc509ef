import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG, db_path

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recipient TEXT NOT NULL,
    display_name TEXT NOT NULL,
    due_at TEXT NOT NULL,
    status TEXT NOT NULL,
    last_error TEXT,
    sent_at TEXT,
    batch_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_due ON jobs(status, due_at);
CREATE INDEX IF NOT EXISTS idx_jobs_batch ON jobs(batch_id);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS tick_lease (
    name TEXT PRIMARY KEY,
    holder TEXT,
    expires_at TEXT
);
"""


def connect_db(path: Optional[str] = None):
    conn = sqlite3.connect(path or db_path(), timeout=30)
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
        conn.execute(
            "INSERT OR IGNORE INTO tick_lease(name, holder, expires_at) VALUES('dispatcher', NULL, NULL)"
        )
    conn.close()
