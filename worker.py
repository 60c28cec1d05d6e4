# worker.py
import logging
import threading
import time
import uuid
from collections import Counter
from enum import Enum

from errors import InvalidConfigError, LeaseExpiredError, QueueUnavailableError
from feedback import ChunkSizeAdvisor
from models import BATCH_CANCELLED, DEAD_LETTERED, FAILED, SUCCEEDED
from progress import DEFAULT_ERROR_SAMPLE_LIMIT, ProgressTracker
from queue_client import SQLiteQueue
from retry import FailureKind, RetryAction, RetryPolicy, default_classifier
from storage import Storage

logger = logging.getLogger(__name__)

# Scale out by adding worker processes; per-process concurrency stays small.
MAX_CONCURRENCY = 5
LATENCY_FLUSH_EVERY = 20


class JobState(str, Enum):
    LEASED = "leased"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_PERMANENT = "failed_permanent"
    CANCELLED = "cancelled"


TRANSITIONS = {
    JobState.LEASED: {JobState.PROCESSING, JobState.CANCELLED},
    JobState.PROCESSING: {JobState.SUCCEEDED, JobState.FAILED_RETRYABLE, JobState.FAILED_PERMANENT},
}


class JobRun:
    """One delivery of a job to this worker, walked through ``TRANSITIONS``."""

    def __init__(self, job, lease):
        self.job = job
        self.lease = lease
        self.state = JobState.LEASED
        self.error = None
        self.reported = False
        self.duration = None

    def advance(self, new_state):
        if new_state not in TRANSITIONS.get(self.state, ()):
            raise RuntimeError(f"illegal transition {self.state.value} → {new_state.value} for job {self.job.id}")
        self.state = new_state


class JobContext:
    """What a processor gets besides the job itself."""

    def __init__(self, worker, job, lease):
        self.worker = worker
        self.job = job
        self.lease = lease

    @property
    def records(self):
        return self.job.records

    @property
    def attempt(self):
        return self.job.attempt

    def extend_lease(self, seconds=None):
        return self.worker.queue.extend_lease(self.job.id, self.lease.token, seconds or self.worker.lease_seconds)

    def is_cancelled(self):
        return self.worker.batch_cancelled(self.job.batch_id)


class LeaseKeeper(threading.Thread):
    """Extends a lease while a long job runs, for at most ``job_timeout`` seconds."""

    def __init__(self, queue, job_id, lease_token, lease_seconds, job_timeout=None):
        super().__init__(name=f"lease-keeper-{job_id}", daemon=True)
        self.queue = queue
        self.job_id = job_id
        self.lease_token = lease_token
        self.lease_seconds = lease_seconds
        self.interval = max(lease_seconds / 3.0, 0.01)
        self.job_timeout = job_timeout
        self.lost = False
        self._stop_event = threading.Event()

    def run(self):
        started = time.monotonic()
        while not self._stop_event.wait(self.interval):
            if self.job_timeout is not None and time.monotonic() - started >= self.job_timeout:
                logger.warning("Job %s: ran past job_timeout=%ss, letting lease lapse", self.job_id, self.job_timeout)
                return
            try:
                self.queue.extend_lease(self.job_id, self.lease_token, self.lease_seconds)
            except LeaseExpiredError:
                logger.warning("Job %s: lease lost while processing", self.job_id)
                self.lost = True
                return
            except QueueUnavailableError as e:
                logger.warning("Job %s: could not extend lease (%s), will retry", self.job_id, e)

    def stop(self):
        self._stop_event.set()
        if self.is_alive():
            self.join()


class Worker:
    """Leases jobs and runs ``processor(job, ctx)`` on each one.

    Holds at most ``concurrency`` leases at a time, one per slot thread. Job
    failures are classified and routed through the retry policy; they never
    take the worker down. A dead worker is recovered by lease expiry.
    """

    def __init__(self, processor, db_path=None, worker_id=None, concurrency=1, lease_seconds=30,
                 poll_interval=1.0, retry_policy=None, classifier=None, stop_event=None,
                 job_timeout=None, keep_lease=True, report_attempts=3, db=None, advisor=None,
                 error_sample_limit=DEFAULT_ERROR_SAMPLE_LIMIT):
        if not 1 <= concurrency <= MAX_CONCURRENCY:
            raise InvalidConfigError(f"concurrency must be between 1 and {MAX_CONCURRENCY}, got {concurrency!r}")
        if lease_seconds <= 0:
            raise InvalidConfigError(f"lease_seconds must be positive, got {lease_seconds!r}")
        self.processor = processor
        self.db = db or Storage(db_path)
        self.queue = SQLiteQueue(self.db)
        self.tracker = ProgressTracker(self.db, error_sample_limit=error_sample_limit)
        self.advisor = advisor or ChunkSizeAdvisor(self.db)
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.concurrency = concurrency
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self.retry_policy = retry_policy or RetryPolicy()
        self.classifier = classifier or default_classifier
        self.stop_event = stop_event or threading.Event()  # shared with the CLI for Ctrl+C
        self.job_timeout = job_timeout
        self.keep_lease = keep_lease
        self.report_attempts = report_attempts
        self.reconnect_policy = RetryPolicy(backoff_base=max(poll_interval, 0.1),
                                            backoff_cap=max(poll_interval, 0.1) * 30)
        self.stats = Counter()
        self._latencies = []
        self._latency_lock = threading.Lock()

    # ---------------- Loop ----------------
    def run(self):
        if self.concurrency == 1:
            self._run_slot(0)
        else:
            threads = [
                threading.Thread(target=self._run_slot, args=(i,), name=f"{self.worker_id}-slot-{i}", daemon=True)
                for i in range(self.concurrency)
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
        self.flush_latencies()

    def stop(self):
        self.stop_event.set()

    def _run_slot(self, slot):
        failures = 0
        while not self.stop_event.is_set():
            try:
                state = self.run_once()
            except QueueUnavailableError as e:
                delay = self.reconnect_policy.delay_for(failures)
                failures += 1
                logger.warning("%s slot %d: queue unavailable (%s), retrying in %.1fs",
                               self.worker_id, slot, e, delay)
                self.stop_event.wait(delay)
                continue
            failures = 0
            if state is None:
                self.stop_event.wait(self.poll_interval)

    def drain(self, max_jobs=None):
        """Process jobs until the queue has nothing ready. Returns how many were handled."""
        handled = 0
        while max_jobs is None or handled < max_jobs:
            if self.run_once() is None:
                break
            handled += 1
        self.flush_latencies()
        return handled

    def run_once(self):
        """Lease and process at most one job. Returns its final ``JobState`` or ``None`` if idle."""
        claimed = self._timed("dequeue", self.queue.dequeue, self.lease_seconds, worker_id=self.worker_id)
        if not claimed:
            return None
        job, lease = claimed
        return self.process(job, lease).state

    # ---------------- One job ----------------
    def process(self, job, lease):
        run = JobRun(job, lease)
        self._log_transition(job.id, lease.previous_state, "processing",
                             f"(claimed by {self.worker_id}, attempt={job.attempt}, delivery={job.deliveries})")

        if self.batch_cancelled(job.batch_id):
            run.advance(JobState.CANCELLED)

            def decline():
                with self.db.transaction():
                    self.queue.decline(job.id, lease.token)
                    if job.attempt > 0:
                        self.tracker.release_retry(job.batch_id)

            run.reported = self._report(job, "decline", decline)
            self._log_transition(job.id, "processing", "cancelled", f"(batch {job.batch_id} cancelled)")
            self.stats[run.state.value] += 1
            return run

        run.advance(JobState.PROCESSING)
        keeper = None
        if self.keep_lease:
            keeper = LeaseKeeper(self.queue, job.id, lease.token, self.lease_seconds, self.job_timeout)
            keeper.start()
        started = time.monotonic()
        try:
            self.processor(job, JobContext(self, job, lease))
        except Exception as exc:
            run.error = exc
        finally:
            if keeper:
                keeper.stop()
            run.duration = time.monotonic() - started

        if run.error is None:
            run.advance(JobState.SUCCEEDED)
            run.reported = self._settle_success(run)
        else:
            self._settle_failure(run)
        self.stats[run.state.value] += 1
        return run

    def _settle_success(self, run):
        job, lease = run.job, run.lease

        def ack():
            with self.db.transaction():
                self.queue.ack(job.id, lease.token)
                self.tracker.increment(job.batch_id, SUCCEEDED, leaving_retry=job.attempt > 0)

        reported = self._report(job, "ack", ack)
        if reported:
            self._log_transition(job.id, "processing", "completed", f"(duration={run.duration:.3f}s)")
        return reported

    def _settle_failure(self, run):
        job, lease, exc = run.job, run.lease, run.error
        error = f"{type(exc).__name__}: {exc}"
        try:
            kind = FailureKind(self.classifier(exc))
        except Exception:
            logger.exception("Job %s: failure classifier raised, treating error as transient", job.id)
            kind = FailureKind.TRANSIENT
        decision = self.retry_policy.decide(job, kind)

        if decision.action == RetryAction.RETRY:
            run.advance(JobState.FAILED_RETRYABLE)

            def nack():
                with self.db.transaction():
                    self.queue.nack(job.id, lease.token, decision.delay, error)
                    if job.attempt == 0:
                        self.tracker.increment(job.batch_id, FAILED)
                    self.tracker.record_failure(job.batch_id, job.id, error)

            run.reported = self._report(job, "nack", nack)
            if run.reported:
                self._log_transition(job.id, "processing", "pending",
                                     f"({decision.reason}, retry_in={decision.delay}s, "
                                     f"duration={run.duration:.3f}s, error={error})")
        else:
            run.advance(JobState.FAILED_PERMANENT)

            def dead_letter():
                with self.db.transaction():
                    self.queue.dead_letter(job.id, lease.token, error, decision.attempts_made)
                    self.tracker.increment(job.batch_id, DEAD_LETTERED, leaving_retry=job.attempt > 0)
                    self.tracker.record_failure(job.batch_id, job.id, error)

            run.reported = self._report(job, "dead_letter", dead_letter)
            if run.reported:
                self._log_transition(job.id, "processing", "dead",
                                     f"({decision.reason}, attempts={decision.attempts_made}, error={error})")

    def _report(self, job, operation, fn, *args):
        """Deliver an outcome to the queue, riding out brief backend outages.

        Gives up (leaving the job to lease expiry) if the lease is gone or the
        backend stays unreachable.
        """
        for attempt in range(self.report_attempts):
            try:
                self._timed(operation, fn, *args)
                return True
            except LeaseExpiredError:
                logger.warning("Job %s: %s rejected, lease expired; another worker owns it now", job.id, operation)
                return False
            except QueueUnavailableError as e:
                delay = self.reconnect_policy.delay_for(attempt)
                logger.warning("Job %s: %s failed, queue unavailable (%s), retrying in %.1fs",
                               job.id, operation, e, delay)
                self.stop_event.wait(delay)
        logger.error("Job %s: giving up on %s after %d tries; lease will expire and the job be redelivered",
                     job.id, operation, self.report_attempts)
        return False

    def batch_cancelled(self, batch_id):
        row = self.db.query_one("SELECT state FROM batches WHERE id=?", (batch_id,))
        return bool(row) and row["state"] == BATCH_CANCELLED

    # ---------------- Latency feedback ----------------
    def _timed(self, operation, fn, *args, **kwargs):
        started = time.perf_counter()
        result = fn(*args, **kwargs)
        elapsed = time.perf_counter() - started
        with self._latency_lock:
            self._latencies.append((operation, elapsed))
            flush = len(self._latencies) >= LATENCY_FLUSH_EVERY
        if flush:
            self.flush_latencies()
        return result

    def flush_latencies(self):
        with self._latency_lock:
            samples, self._latencies = self._latencies, []
        try:
            self.advisor.record_many(samples, worker_id=self.worker_id)
        except QueueUnavailableError as e:
            logger.warning("%s: dropped %d latency samples (%s)", self.worker_id, len(samples), e)

    def _log_transition(self, job_id, old_state, new_state, extra=""):
        logger.info("Job %s: %s → %s %s", job_id, old_state, new_state, extra)
