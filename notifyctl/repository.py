import logging
import os
import sqlite3
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from .utils import now_iso, to_iso, utcnow, due_at_from, to_canonical_recipient
from .models import PENDING, SENT, ERROR, STATUSES, Job
from .config import ALLOWED_CONFIG_KEYS, INT_CONFIG_KEYS, DEFAULT_CONFIG, ENV_OVERRIDES, config_int

logger = logging.getLogger(__name__)

LEASE_NAME = "dispatcher"
MAX_ERROR_LEN = 500


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cfg = dict(DEFAULT_CONFIG)
    cur = conn.execute("SELECT key, value FROM config")
    cfg.update({r["key"]: r["value"] for r in cur.fetchall()})
    for key, env_var in ENV_OVERRIDES.items():
        if os.environ.get(env_var):
            cfg[key] = os.environ[env_var]
    return cfg


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    if key in INT_CONFIG_KEYS:
        try:
            int(value)
        except ValueError:
            raise ValueError(f"{key} must be an integer.")
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


# ---------- Jobs: insert / enqueue ----------
def insert_job(
    conn,
    *,
    recipient: str,
    display_name: str,
    due_at: str,
    batch_id: Optional[str] = None,
) -> int:
    """Insert one pending job and return its id. Store errors become RuntimeError."""
    ts = now_iso()
    try:
        with conn:
            cur = conn.execute(
                """INSERT INTO jobs
                   (recipient, display_name, due_at, status, created_at, updated_at, batch_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (recipient, display_name, due_at, PENDING, ts, ts, batch_id),
            )
        return cur.lastrowid
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while inserting job: {e}")


def resolve_delay(conn, delay_minutes: Optional[int]) -> int:
    if delay_minutes is None:
        delay_minutes = config_int(get_config(conn), "default_delay_minutes")
    try:
        return max(0, int(delay_minutes))
    except (TypeError, ValueError, OverflowError):
        raise ValueError(f"Invalid delay_minutes: {delay_minutes!r}")


def enqueue_job(
    conn,
    *,
    recipient: str,
    display_name: str,
    delay_minutes: Optional[int] = None,
    batch_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[int, str]:
    """Schedule one notification. Returns (job_id, scheduled_for)."""
    if not recipient or not str(recipient).strip():
        raise ValueError("Recipient cannot be empty.")
    if not display_name or not str(display_name).strip():
        raise ValueError("Name cannot be empty.")

    cfg = get_config(conn)
    due_at = due_at_from(now or utcnow(), resolve_delay(conn, delay_minutes))
    job_id = insert_job(
        conn,
        recipient=to_canonical_recipient(recipient, cfg["default_country_code"]),
        display_name=str(display_name).strip(),
        due_at=due_at,
        batch_id=batch_id,
    )
    logger.debug(f"Enqueued job {job_id} due at {due_at}")
    return job_id, due_at


# ---------- Dispatch: select / transition ----------
def due_jobs(conn, limit: int = 10, now: Optional[str] = None) -> List[Job]:
    try:
        rows = conn.execute(
            """SELECT * FROM jobs
               WHERE status=? AND due_at <= ?
               ORDER BY id ASC
               LIMIT ?""",
            (PENDING, now or now_iso(), int(limit)),
        ).fetchall()
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while selecting due jobs: {e}")
    return [Job.from_row(r) for r in rows]


def mark_sent(conn, job_id: int) -> bool:
    ts = now_iso()
    try:
        with conn:
            res = conn.execute(
                """UPDATE jobs
                   SET status=?, sent_at=?, last_error=NULL, updated_at=?
                   WHERE id=? AND status=?""",
                (SENT, ts, ts, job_id, PENDING),
            )
        return res.rowcount == 1
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while marking job {job_id} sent: {e}")


def mark_error(conn, job_id: int, error: str) -> bool:
    try:
        with conn:
            res = conn.execute(
                """UPDATE jobs
                   SET status=?, last_error=?, updated_at=?
                   WHERE id=? AND status=?""",
                (ERROR, (error or "unknown error")[:MAX_ERROR_LEN], now_iso(), job_id, PENDING),
            )
        return res.rowcount == 1
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while marking job {job_id} failed: {e}")


# ---------- Tick lease (cross-process serialization) ----------
def acquire_tick_lease(conn, holder: str, ttl_seconds: int, now: Optional[datetime] = None) -> bool:
    current = now or utcnow()
    ts = to_iso(current)
    try:
        with conn:
            conn.execute(
                "INSERT OR IGNORE INTO tick_lease(name, holder, expires_at) VALUES(?, NULL, NULL)",
                (LEASE_NAME,),
            )
            res = conn.execute(
                """UPDATE tick_lease SET holder=?, expires_at=?
                   WHERE name=? AND (holder IS NULL OR expires_at IS NULL OR expires_at <= ?)""",
                (holder, to_iso(current + timedelta(seconds=ttl_seconds)), LEASE_NAME, ts),
            )
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while acquiring tick lease: {e}")
    return res.rowcount == 1


def release_tick_lease(conn, holder: str):
    with conn:
        conn.execute(
            "UPDATE tick_lease SET holder=NULL, expires_at=NULL WHERE name=? AND holder=?",
            (LEASE_NAME, holder),
        )


# ---------- Queries ----------
def get_job(conn, job_id: int) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


def list_jobs(conn, batch_id: Optional[str] = None, limit: int = 100) -> List[Job]:
    if batch_id:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE batch_id=? ORDER BY id DESC",
            (batch_id,),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM jobs ORDER BY id DESC LIMIT ?",
            (int(limit),),
        ).fetchall()
    return [Job.from_row(r) for r in rows]


def batch_stats(conn, batch_id: str) -> Dict[str, object]:
    if not batch_id or not batch_id.strip():
        raise ValueError("Batch id cannot be empty.")
    row = conn.execute(
        """SELECT COUNT(1) AS total,
                  COALESCE(SUM(status=?), 0) AS pending,
                  COALESCE(SUM(status=?), 0) AS sent,
                  COALESCE(SUM(status=?), 0) AS errors
           FROM jobs WHERE batch_id=?""",
        (PENDING, SENT, ERROR, batch_id),
    ).fetchone()
    return {
        "batch_id": batch_id,
        "total": row["total"],
        "pending": row["pending"],
        "sent": row["sent"],
        "errors": row["errors"],
    }


def counts(conn) -> Dict[str, int]:
    out = {}
    for s in STATUSES:
        out[s] = conn.execute(
            "SELECT COUNT(1) AS c FROM jobs WHERE status=?",
            (s,),
        ).fetchone()["c"]
    return out
