import threading
import time
from datetime import datetime, timedelta, timezone

from notifyctl.db import connect_db
from notifyctl.delivery import DeliveryResult
from notifyctl.models import PENDING, SENT, ERROR
from notifyctl.repository import enqueue_job, get_job, list_jobs, acquire_tick_lease, set_config
from notifyctl.worker import Dispatcher, run_tick

from conftest import FakeDelivery

NOW = datetime(2025, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


def _snapshot(conn):
    return [j.to_dict() for j in list_jobs(conn)]


def test_tick_sends_due_jobs(conn, fake_delivery):
    job_id, _ = enqueue_job(conn, recipient="11987654321", display_name="Ana", delay_minutes=0, now=NOW)

    report = run_tick(conn, fake_delivery, now=NOW)

    job = get_job(conn, job_id)
    assert report.selected == 1 and report.sent == 1 and report.failed == 0
    assert fake_delivery.calls == [("+5511987654321", "Ana")]
    assert job.status == SENT
    assert job.sent_at is not None
    assert job.last_error is None


def test_tick_records_failures_and_continues(conn):
    delivery = FakeDelivery(failing={"+552"})
    ok_id, _ = enqueue_job(conn, recipient="1", display_name="a", delay_minutes=0, now=NOW)
    bad_id, _ = enqueue_job(conn, recipient="2", display_name="b", delay_minutes=0, now=NOW)
    ok2_id, _ = enqueue_job(conn, recipient="3", display_name="c", delay_minutes=0, now=NOW)

    report = run_tick(conn, delivery, now=NOW)

    assert [c[0] for c in delivery.calls] == ["+551", "+552", "+553"]
    assert report.sent == 2 and report.failed == 1
    bad = get_job(conn, bad_id)
    assert bad.status == ERROR
    assert bad.last_error == "HTTP 400: invalid recipient"
    assert bad.sent_at is None
    assert get_job(conn, ok_id).status == SENT
    assert get_job(conn, ok2_id).status == SENT


def test_future_jobs_are_never_selected(conn, fake_delivery):
    job_id, _ = enqueue_job(conn, recipient="1", display_name="a", delay_minutes=5, now=NOW)

    report = run_tick(conn, fake_delivery, now=NOW + timedelta(minutes=4))

    assert report.selected == 0
    assert fake_delivery.calls == []
    assert get_job(conn, job_id).status == PENDING


def test_second_tick_without_new_work_changes_nothing(conn, fake_delivery):
    enqueue_job(conn, recipient="1", display_name="a", delay_minutes=0, now=NOW)
    enqueue_job(conn, recipient="2", display_name="b", delay_minutes=0, now=NOW)
    run_tick(conn, FakeDelivery(failing={"+552"}), now=NOW)
    before = _snapshot(conn)

    report = run_tick(conn, fake_delivery, now=NOW)

    assert report.selected == 0
    assert fake_delivery.calls == []
    assert _snapshot(conn) == before


def test_tick_respects_batch_size_in_id_order(conn, fake_delivery):
    ids = [enqueue_job(conn, recipient=str(i + 1), display_name="x", delay_minutes=0, now=NOW)[0]
           for i in range(4)]

    report = run_tick(conn, fake_delivery, batch_size=3, now=NOW)

    assert [r["id"] for r in report.results] == ids[:3]
    assert get_job(conn, ids[3]).status == PENDING


def test_raising_or_bogus_delivery_is_a_failure(conn):
    def boom(recipient, name):
        raise ConnectionError("provider down")

    job_id, _ = enqueue_job(conn, recipient="1", display_name="a", delay_minutes=0, now=NOW)
    run_tick(conn, boom, now=NOW)
    assert "provider down" in get_job(conn, job_id).last_error

    other, _ = enqueue_job(conn, recipient="2", display_name="b", delay_minutes=0, now=NOW)
    run_tick(conn, lambda r, n: DeliveryResult(ok=False), now=NOW)
    assert get_job(conn, other).last_error == "delivery failed"


def test_store_failure_on_one_job_does_not_abort_tick(conn, fake_delivery, monkeypatch):
    from notifyctl import worker

    first, _ = enqueue_job(conn, recipient="1", display_name="a", delay_minutes=0, now=NOW)
    second, _ = enqueue_job(conn, recipient="2", display_name="b", delay_minutes=0, now=NOW)
    real_mark_sent = worker.mark_sent

    def flaky_mark_sent(conn, job_id):
        if job_id == first:
            raise RuntimeError("DB error while marking job sent: database is locked")
        return real_mark_sent(conn, job_id)

    monkeypatch.setattr(worker, "mark_sent", flaky_mark_sent)
    report = run_tick(conn, fake_delivery, now=NOW)

    assert report.store_errors == 1
    assert report.sent == 1
    assert get_job(conn, second).status == SENT


def test_dispatcher_tick_uses_configured_batch_size(db_file, conn, fake_delivery):
    set_config(conn, "tick_batch_size", "2")
    for i in range(3):
        enqueue_job(conn, recipient=str(i + 1), display_name="x", delay_minutes=0)

    report = Dispatcher(fake_delivery, db_file=db_file).tick()

    assert report.selected == 2


def test_dispatcher_skips_when_lease_held_elsewhere(db_file, conn, fake_delivery):
    enqueue_job(conn, recipient="1", display_name="a", delay_minutes=0)
    assert acquire_tick_lease(conn, "other-process", 300)

    assert Dispatcher(fake_delivery, db_file=db_file).tick() is None
    assert fake_delivery.calls == []


def test_dispatcher_releases_lease_after_tick(db_file, conn, fake_delivery):
    dispatcher = Dispatcher(fake_delivery, db_file=db_file)
    assert dispatcher.tick() is not None
    assert acquire_tick_lease(conn, "other-process", 300)


def test_overlapping_ticks_do_not_double_send(db_file, conn):
    enqueue_job(conn, recipient="1", display_name="a", delay_minutes=0)
    started = threading.Event()
    release = threading.Event()
    calls = []

    def slow_delivery(recipient, name):
        calls.append(recipient)
        started.set()
        release.wait(5)
        return DeliveryResult.success()

    dispatcher = Dispatcher(slow_delivery, db_file=db_file)
    t = threading.Thread(target=dispatcher.tick)
    t.start()
    assert started.wait(5)

    assert dispatcher.tick(blocking=False) is None
    assert Dispatcher(slow_delivery, db_file=db_file).tick() is None

    release.set()
    t.join(5)
    assert calls == ["+551"]


def test_trigger_wakes_the_loop(db_file, fake_delivery):
    dispatcher = Dispatcher(fake_delivery, db_file=db_file, interval=3600)
    t = threading.Thread(target=dispatcher.run, daemon=True)
    t.start()

    conn = connect_db(db_file)
    try:
        time.sleep(0.2)
        job_id, _ = enqueue_job(conn, recipient="1", display_name="a", delay_minutes=0)
        dispatcher.trigger()
        deadline = time.time() + 5
        while get_job(conn, job_id).status == PENDING and time.time() < deadline:
            time.sleep(0.05)
        assert get_job(conn, job_id).status == SENT
    finally:
        dispatcher.stop()
        t.join(5)
        conn.close()

    assert dispatcher.stopped
    assert not t.is_alive()


def test_outcome_not_counted_when_job_left_pending_state(conn, fake_delivery, monkeypatch):
    from notifyctl import worker

    job_id, _ = enqueue_job(conn, recipient="1", display_name="a", delay_minutes=0, now=NOW)
    monkeypatch.setattr(worker, "mark_sent", lambda conn, job_id: False)

    report = run_tick(conn, fake_delivery, now=NOW)

    assert report.selected == 1
    assert report.sent == 0 and report.failed == 0
    assert report.results == []


def test_loop_survives_store_error_reading_interval(db_file, fake_delivery, monkeypatch):
    import sqlite3
    from notifyctl import worker

    real_connect = worker.connect_db
    calls = []

    def flaky_connect(path=None):
        calls.append(path)
        if len(calls) == 2:
            raise sqlite3.OperationalError("database is locked")
        return real_connect(path)

    monkeypatch.setattr(worker, "connect_db", flaky_connect)
    dispatcher = Dispatcher(fake_delivery, db_file=db_file)
    t = threading.Thread(target=dispatcher.run, daemon=True)
    t.start()
    try:
        time.sleep(0.5)
        assert len(calls) >= 2
        assert t.is_alive()
    finally:
        dispatcher.stop()
        t.join(5)
    assert not t.is_alive()
