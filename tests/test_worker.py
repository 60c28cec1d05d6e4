import logging
import threading
import time
from collections import Counter

import pytest

from batches import BatchService
from errors import (
    InvalidConfigError, LeaseExpiredError, PermanentProcessingError, QueueUnavailableError,
    TransientProcessingError,
)
from models import CANCELLED, COMPLETED, PENDING, PROCESSING, from_iso
from queue_client import SQLiteQueue
from retry import FailureKind, RetryPolicy
from settings import Settings
from storage import Storage
from worker import JobRun, JobState, MAX_CONCURRENCY, Worker


def test_all_chunks_succeed(service, make_worker):
    batch_id = service.create_batch(total_records=10000, chunk_size=500)
    seen = []
    worker = make_worker(lambda job, ctx: seen.append((job.chunk_start, job.chunk_end)))

    assert worker.drain() == 20

    status = service.get_batch_status(batch_id)
    assert (status.total, status.succeeded, status.dead_lettered, status.terminal) == (20, 20, 0, True)
    assert sorted(seen) == [(i, i + 500) for i in range(0, 10000, 500)]


def test_job_failing_every_attempt_is_dead_lettered_once(service, make_worker, clock):
    batch_id = service.create_batch(total_records=100, chunk_size=10, max_attempts=3)
    calls = Counter()

    def flaky(job, ctx):
        calls[job.index] += 1
        if job.index == 3:
            raise TransientProcessingError("downstream timeout")

    worker = make_worker(flaky)
    worker.drain()
    assert service.get_batch_status(batch_id).failed_in_retry == 1
    clock.advance(1)
    worker.drain()
    clock.advance(2)
    worker.drain()

    status = service.get_batch_status(batch_id)
    assert calls[3] == 3
    assert (status.succeeded, status.failed_in_retry, status.dead_lettered) == (9, 0, 1)
    assert status.terminal
    assert status.failed_attempts == 3
    entries = service.list_dead_letters(batch_id=batch_id)
    assert [(e.job_id, e.attempts_made) for e in entries] == [(f"{batch_id}:000003", 3)]
    assert "downstream timeout" in entries[0].last_error


def test_permanent_error_skips_remaining_attempts(service, make_worker):
    batch_id = service.create_batch(total_records=20, chunk_size=10, max_attempts=5)

    def poison_first(job, ctx):
        if job.index == 0:
            raise PermanentProcessingError("malformed chunk")

    make_worker(poison_first).drain()

    status = service.get_batch_status(batch_id)
    assert (status.succeeded, status.dead_lettered, status.terminal) == (1, 1, True)
    assert [e.attempts_made for e in service.list_dead_letters(batch_id=batch_id)] == [1]


def test_retried_job_that_recovers_counts_once(service, make_worker, clock):
    batch_id = service.create_batch(total_records=10, chunk_size=10)
    failures = iter([True, False])

    def recovers(job, ctx):
        if next(failures):
            raise ConnectionError("blip")

    worker = make_worker(recovers)
    assert worker.run_once() == JobState.FAILED_RETRYABLE
    clock.advance(1)
    assert worker.run_once() == JobState.SUCCEEDED

    status = service.get_batch_status(batch_id)
    assert (status.succeeded, status.failed_in_retry, status.dead_lettered) == (1, 0, 0)
    assert status.terminal


def test_nack_delays_grow_until_cap(service, make_worker, clock):
    service.create_batch(total_records=1, chunk_size=1, max_attempts=10, batch_id="batch-b")
    policy = RetryPolicy(backoff_base=1.0, backoff_cap=4.0)
    def always_fails(job, ctx):
        raise TransientProcessingError("still down")

    worker = make_worker(always_fails, retry_policy=policy)
    delays = []
    for _ in range(5):
        before = clock()
        worker.run_once()
        available = service.queue.get_job("batch-b:000000").available_at
        delays.append((from_iso(available) - before).total_seconds())
        clock.advance(delays[-1])

    assert delays == [1.0, 2.0, 4.0, 4.0, 4.0]


def test_redelivered_job_counts_success_once(service, make_worker, clock):
    batch_id = service.create_batch(total_records=50, chunk_size=10)
    processed = Counter()

    stuck_job, stale_lease = service.queue.dequeue(lease_seconds=30, worker_id="slow-worker")
    processed[stuck_job.id] += 1
    clock.advance(31)

    worker = make_worker(lambda job, ctx: processed.update([job.id]), worker_id="fast-worker")
    worker.drain()

    with pytest.raises(LeaseExpiredError):
        service.queue.ack(stuck_job.id, stale_lease.token)
    status = service.get_batch_status(batch_id)
    assert processed[stuck_job.id] == 2
    assert len(processed) == 5
    assert status.succeeded == 5
    assert status.terminal


def test_crashed_worker_job_goes_to_another_worker(service, make_worker, clock):
    batch_id = service.create_batch(total_records=30, chunk_size=10)
    crashed, _ = service.queue.dequeue(lease_seconds=30, worker_id="worker-a")
    # worker-a dies here: no ack, no nack

    survivor = make_worker(lambda job, ctx: None, worker_id="worker-b")
    survivor.drain()
    status = service.get_batch_status(batch_id)
    assert status.succeeded == 2
    assert service.queue.get_job(crashed.id).state == PROCESSING

    clock.advance(30)
    survivor.drain()

    job = service.queue.get_job(crashed.id)
    assert (job.state, job.worker_id, job.deliveries, job.attempt) == (COMPLETED, "worker-b", 2, 0)
    status = service.get_batch_status(batch_id)
    assert (status.succeeded, status.failed_in_retry, status.dead_lettered, status.terminal) == (3, 0, 0, True)


def test_cancelled_batch_is_declined_before_processing(service, make_worker):
    batch_id = service.create_batch(total_records=20, chunk_size=10)
    calls = []
    worker = make_worker(lambda job, ctx: calls.append(job.id))
    job, lease = service.queue.dequeue(lease_seconds=30)
    service.cancel_batch(batch_id)

    run = worker.process(job, lease)

    assert run.state == JobState.CANCELLED
    assert calls == []
    assert service.queue.get_job(job.id).state == CANCELLED
    assert worker.drain() == 0
    assert service.queue.get_job(f"{batch_id}:000001").state == PENDING


def test_processor_can_check_cancellation_and_extend_lease(service, make_worker, clock):
    batch_id = service.create_batch(total_records=10, chunk_size=10)
    observed = {}

    def long_job(job, ctx):
        observed["cancelled"] = ctx.is_cancelled()
        clock.advance(25)
        observed["expiry"] = ctx.extend_lease(30)
        clock.advance(25)

    worker = make_worker(long_job, lease_seconds=30)
    assert worker.run_once() == JobState.SUCCEEDED
    assert observed["cancelled"] is False
    assert service.get_batch_status(batch_id).succeeded == 1


def test_lost_lease_is_not_counted(service, make_worker, clock):
    batch_id = service.create_batch(total_records=10, chunk_size=10)

    def too_slow(job, ctx):
        clock.advance(31)

    worker = make_worker(too_slow, lease_seconds=30)
    worker.run_once()

    status = service.get_batch_status(batch_id)
    assert status.succeeded == 0
    assert service.queue.get_job(f"{batch_id}:000000").state == PROCESSING


def test_custom_classifier_routes_errors(service, make_worker):
    batch_id = service.create_batch(total_records=10, chunk_size=10, max_attempts=5)

    def classify(exc):
        return FailureKind.PERMANENT if isinstance(exc, ValueError) else FailureKind.TRANSIENT

    def bad_input(job, ctx):
        raise ValueError("cannot parse row")

    make_worker(bad_input, classifier=classify).drain()

    assert service.get_batch_status(batch_id).dead_lettered == 1


def test_queue_outage_during_ack_does_not_fail_the_job(service, make_worker):
    batch_id = service.create_batch(total_records=10, chunk_size=10)
    worker = make_worker(lambda job, ctx: None, report_attempts=2)

    def unavailable(*args, **kwargs):
        raise QueueUnavailableError("connection refused")

    worker.queue.ack = unavailable

    assert worker.run_once() == JobState.SUCCEEDED
    status = service.get_batch_status(batch_id)
    assert (status.succeeded, status.failed_in_retry, status.failed_attempts) == (0, 0, 0)
    assert service.queue.get_job(f"{batch_id}:000000").state == PROCESSING


def test_worker_loop_survives_queue_outage(service, make_worker):
    worker = make_worker(lambda job, ctx: None)
    calls = []

    def flaky_dequeue(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise QueueUnavailableError("database is locked")
        worker.stop()
        return None

    worker.queue.dequeue = flaky_dequeue
    worker.run()

    assert len(calls) == 2


def test_concurrent_slots_and_processes_process_each_job_once(service, db_path):
    batch_id = service.create_batch(total_records=400, chunk_size=10)
    processed = Counter()
    lock = threading.Lock()

    def record(job, ctx):
        with lock:
            processed[job.id] += 1

    stop = threading.Event()
    workers = [
        Worker(record, db=Storage(db_path), worker_id=f"w{i}", concurrency=2, lease_seconds=30,
               poll_interval=0.01, stop_event=stop)
        for i in range(2)
    ]
    threads = [threading.Thread(target=w.run, daemon=True) for w in workers]
    for t in threads:
        t.start()

    reader = Storage(db_path)
    deadline = time.monotonic() + 30
    while time.monotonic() < deadline:
        row = reader.query_one("SELECT succeeded FROM progress WHERE batch_id=?", (batch_id,))
        if row["succeeded"] == 40:
            break
        time.sleep(0.05)
    stop.set()
    for t in threads:
        t.join(timeout=10)

    status = service.get_batch_status(batch_id)
    assert status.succeeded == 40
    assert status.terminal
    assert len(processed) == 40
    assert set(processed.values()) == {1}


def test_worker_records_queue_latency(service, make_worker, db):
    service.create_batch(total_records=50, chunk_size=10)
    make_worker(lambda job, ctx: None, worker_id="w-lat").drain()

    rows = db.query("SELECT operation, COUNT(*) AS c FROM latency_samples WHERE worker_id='w-lat' GROUP BY operation")
    counts = {r["operation"]: r["c"] for r in rows}
    assert counts == {"dequeue": 6, "ack": 5}


def test_state_machine_rejects_skipped_states():
    run = JobRun(job=type("J", (), {"id": "j"})(), lease=None)

    with pytest.raises(RuntimeError):
        run.advance(JobState.SUCCEEDED)
    run.advance(JobState.PROCESSING)
    run.advance(JobState.FAILED_PERMANENT)
    with pytest.raises(RuntimeError):
        run.advance(JobState.PROCESSING)


def test_concurrency_is_bounded(make_worker):
    with pytest.raises(InvalidConfigError):
        make_worker(lambda job, ctx: None, concurrency=MAX_CONCURRENCY + 1)
    with pytest.raises(InvalidConfigError):
        make_worker(lambda job, ctx: None, concurrency=0)


def test_declining_a_job_in_retry_releases_the_failed_gauge(service, make_worker, clock):
    batch_id = service.create_batch(total_records=10, chunk_size=10)

    def blip(job, ctx):
        raise TransientProcessingError("blip")

    worker = make_worker(blip)
    assert worker.run_once() == JobState.FAILED_RETRYABLE
    assert service.get_batch_status(batch_id).failed_in_retry == 1
    clock.advance(1)
    job, lease = service.queue.dequeue(lease_seconds=30)
    service.cancel_batch(batch_id)

    run = worker.process(job, lease)

    assert (run.state, run.reported) == (JobState.CANCELLED, True)
    status = service.get_batch_status(batch_id)
    assert (status.succeeded, status.failed_in_retry, status.dead_lettered) == (0, 0, 0)
    assert status.failed_attempts == 1
    assert service.queue.get_job(job.id).state == CANCELLED


def test_worker_keeps_only_the_configured_error_samples(service, make_worker):
    batch_id = service.create_batch(total_records=40, chunk_size=10)

    def poison(job, ctx):
        raise PermanentProcessingError(f"bad chunk {job.index}")

    make_worker(poison, error_sample_limit=2).drain()

    status = service.get_batch_status(batch_id)
    assert (status.dead_lettered, status.failed_attempts) == (4, 4)
    assert status.error_samples == [
        f"{batch_id}:000002: PermanentProcessingError: bad chunk 2",
        f"{batch_id}:000003: PermanentProcessingError: bad chunk 3",
    ]


def test_redelivery_logs_the_previous_state(service, make_worker, clock, caplog):
    service.create_batch(total_records=10, chunk_size=10, batch_id="batch-r")
    _, first_lease = service.queue.dequeue(lease_seconds=30, worker_id="gone")
    assert first_lease.previous_state == PENDING
    clock.advance(31)

    with caplog.at_level(logging.INFO, logger="worker"):
        assert make_worker(lambda job, ctx: None).run_once() == JobState.SUCCEEDED

    assert "Job batch-r:000000: processing → processing" in caplog.text
    assert "Job batch-r:000000: pending → processing" not in caplog.text


@pytest.fixture
def live_service(tmp_path):
    storage = Storage(str(tmp_path / "live.db"))
    yield BatchService(storage, settings=Settings())
    storage.close()


def test_lease_keeper_holds_the_lease_while_a_long_job_runs(live_service):
    batch_id = live_service.create_batch(total_records=10, chunk_size=10)
    rival_db = Storage(live_service.db.db_path)
    rival = SQLiteQueue(rival_db)
    stolen = []

    def long_job(job, ctx):
        time.sleep(0.6)
        stolen.append(rival.dequeue(lease_seconds=5, worker_id="rival"))
        time.sleep(0.4)

    worker = Worker(long_job, db=live_service.db, worker_id="keeper", lease_seconds=0.3, poll_interval=0.01)
    try:
        assert worker.run_once() == JobState.SUCCEEDED
    finally:
        rival_db.close()

    assert stolen == [None]
    job = live_service.queue.get_job(f"{batch_id}:000000")
    assert (job.state, job.deliveries, job.worker_id) == (COMPLETED, 1, "keeper")
    status = live_service.get_batch_status(batch_id)
    assert (status.succeeded, status.terminal) == (1, True)


def test_job_timeout_lets_the_lease_lapse_and_the_job_is_redelivered(live_service):
    batch_id = live_service.create_batch(total_records=10, chunk_size=10)
    slow = Worker(lambda job, ctx: time.sleep(1.0), db=live_service.db, worker_id="slow",
                  lease_seconds=0.3, job_timeout=0.2, poll_interval=0.01)

    assert slow.run_once() == JobState.SUCCEEDED

    job = live_service.queue.get_job(f"{batch_id}:000000")
    assert (job.state, job.worker_id) == (PROCESSING, "slow")
    assert live_service.get_batch_status(batch_id).succeeded == 0

    rescuer = Worker(lambda job, ctx: None, db=live_service.db, worker_id="rescuer",
                     keep_lease=False, poll_interval=0.01)
    assert rescuer.drain() == 1

    job = live_service.queue.get_job(f"{batch_id}:000000")
    assert (job.state, job.deliveries, job.worker_id) == (COMPLETED, 2, "rescuer")
    status = live_service.get_batch_status(batch_id)
    assert (status.succeeded, status.terminal) == (1, True)
