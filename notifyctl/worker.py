import logging
import os
import signal
import socket
import sqlite3
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, List, Optional

from .config import DEFAULT_CONFIG, config_int
from .db import connect_db
from .delivery import DeliveryResult, WhatsAppClient
from .repository import (
    due_jobs, mark_sent, mark_error, get_config,
    acquire_tick_lease, release_tick_lease,
)
from .models import Job, SENT, ERROR
from .utils import to_iso

logger = logging.getLogger(__name__)

Deliver = Callable[[str, str], DeliveryResult]


@dataclass
class TickReport:
    selected: int = 0
    sent: int = 0
    failed: int = 0
    store_errors: int = 0
    results: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def attempt_delivery(deliver: Deliver, job: Job) -> DeliveryResult:
    """Call the provider; anything other than a successful result is a failure."""
    try:
        result = deliver(job.recipient, job.display_name)
    except Exception as e:
        logger.exception(f"Delivery raised for job {job.id}")
        return DeliveryResult.failure(f"delivery raised: {e}")
    if not isinstance(result, DeliveryResult):
        return DeliveryResult.failure(f"unexpected delivery result: {result!r}")
    if not result.ok and not result.error:
        result.error = "delivery failed"
    return result


def run_tick(conn, deliver: Deliver, *, batch_size: int = 10, now: Optional[datetime] = None) -> TickReport:
    """One pass over due pending jobs, oldest id first, delivered one at a time."""
    report = TickReport()
    jobs = due_jobs(conn, limit=batch_size, now=to_iso(now) if now else None)
    report.selected = len(jobs)

    for job in jobs:
        logger.info(f"Dispatching job {job.id} → {job.recipient}")
        result = attempt_delivery(deliver, job)
        try:
            if result.ok:
                if not mark_sent(conn, job.id):
                    logger.warning(f"Job {job.id} was no longer pending; sent outcome not recorded.")
                    continue
                report.sent += 1
                report.results.append({"id": job.id, "status": SENT})
                logger.info(f"Job {job.id} sent.")
            else:
                if not mark_error(conn, job.id, result.error):
                    logger.warning(f"Job {job.id} was no longer pending; failure not recorded.")
                    continue
                report.failed += 1
                report.results.append({"id": job.id, "status": ERROR, "error": result.error})
                logger.warning(f"Job {job.id} failed: {result.error}")
        except RuntimeError as e:
            report.store_errors += 1
            logger.error(f"Could not record outcome for job {job.id}: {e}")

    return report


class Dispatcher:
    """
    Periodic, non-overlapping tick runner.

    tick() is the single guarded entry point for both the timer and
    on-demand triggers. Within a process a lock serializes ticks; across
    processes a lease row in the database does.
    """

    def __init__(
        self,
        deliver: Deliver,
        db_file: Optional[str] = None,
        interval: Optional[int] = None,
        batch_size: Optional[int] = None,
        lease_seconds: Optional[int] = None,
        name: Optional[str] = None,
    ):
        self.deliver = deliver
        self.db_file = db_file
        self.interval = interval
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.name = name or f"{socket.gethostname()}:{os.getpid()}:{id(self):x}"
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._wake = threading.Event()

    def tick(self, blocking: bool = True) -> Optional[TickReport]:
        """Run one tick. Returns None when another tick holds the guard."""
        if not self._lock.acquire(blocking=blocking):
            logger.info("Previous tick still running; skipping.")
            return None
        try:
            conn = connect_db(self.db_file)
            try:
                cfg = get_config(conn)
                batch_size = self.batch_size or config_int(cfg, "tick_batch_size")
                lease = self.lease_seconds or config_int(cfg, "tick_lease_seconds")
                if not acquire_tick_lease(conn, self.name, lease):
                    logger.info("Another process is running a tick; skipping.")
                    return None
                try:
                    report = run_tick(conn, self.deliver, batch_size=batch_size)
                finally:
                    release_tick_lease(conn, self.name)
            finally:
                conn.close()
        finally:
            self._lock.release()

        if report.selected:
            logger.info(
                f"Tick done: {report.sent} sent, {report.failed} failed, "
                f"{report.store_errors} store errors"
            )
        return report

    def trigger(self):
        """Wake the periodic loop now instead of at the next interval."""
        self._wake.set()

    def stop(self):
        self._stop.set()
        self._wake.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _interval(self) -> int:
        if self.interval:
            return self.interval
        try:
            conn = connect_db(self.db_file)
            try:
                return config_int(get_config(conn), "tick_interval_seconds")
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Could not read tick interval ({e}); using default.")
            return int(DEFAULT_CONFIG["tick_interval_seconds"])

    def run(self):
        logger.info(f"[{self.name}] Dispatcher started.")
        while not self._stop.is_set():
            try:
                self.tick(blocking=False)
            except Exception:
                logger.exception("Unexpected error during tick")
            self._wake.wait(self._interval())
            self._wake.clear()
        logger.info(f"[{self.name}] Dispatcher stopped.")


def setup_signal_handlers(dispatcher: Dispatcher):
    def _handler(signum, frame):
        logger.info(f"Received signal {signum}. Stopping dispatcher")
        dispatcher.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not in the main thread
            pass


def start_dispatcher(interval: Optional[int] = None, db_file: Optional[str] = None):
    """Run the dispatcher loop in a background thread until signalled."""
    conn = connect_db(db_file)
    try:
        cfg = get_config(conn)
    finally:
        conn.close()

    client = WhatsAppClient.from_env(cfg)
    dispatcher = Dispatcher(client.deliver, db_file=db_file, interval=interval)
    setup_signal_handlers(dispatcher)

    t = threading.Thread(target=dispatcher.run, name="dispatcher", daemon=True)
    t.start()
    try:
        while t.is_alive():
            t.join(0.5)
    finally:
        dispatcher.stop()
        t.join()
    return dispatcher
