# queue_client.py
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta

from errors import JobNotFoundError, LeaseExpiredError
from models import (
    BATCH_CANCELLED, CANCELLED, COMPLETED, DEAD, PENDING, PROCESSING,
    DeadLetterEntry, Job, Lease, from_iso, to_iso,
)

logger = logging.getLogger(__name__)


class QueueBackend(ABC):
    """Primitives any durable queue backend has to expose.

    Delivery is at-least-once: a job whose lease runs out before ``ack``,
    ``nack`` or ``dead_letter`` is handed to another worker, so processing
    logic must be idempotent.
    """

    @abstractmethod
    def enqueue(self, job):
        """Persist ``job``. Enqueueing an existing job id is a no-op."""

    @abstractmethod
    def dequeue(self, lease_seconds, timeout=0.0, poll_interval=0.1, worker_id=None):
        """Lease one ready job. Returns ``(Job, Lease)`` or ``None``."""

    @abstractmethod
    def ack(self, job_id, lease_token):
        """Mark the job complete; it is never delivered again."""

    @abstractmethod
    def nack(self, job_id, lease_token, delay, error=None):
        """Return the job to the queue after ``delay`` seconds, bumping ``attempt``."""

    @abstractmethod
    def extend_lease(self, job_id, lease_token, additional_seconds):
        """Push the lease expiry out; returns the new expiry."""

    @abstractmethod
    def dead_letter(self, job_id, lease_token, error, attempts_made):
        """Stop redelivery and append a dead-letter entry."""

    @abstractmethod
    def decline(self, job_id, lease_token):
        """Give up a leased job without running it (its batch was cancelled)."""


class SQLiteQueue(QueueBackend):
    def __init__(self, db):
        self.db = db

    # ---------------- Producer side ----------------
    def enqueue(self, job):
        now_iso = self.db.now_iso()
        payload = json.dumps(job.payload) if job.payload is not None else None
        with self.db.transaction() as conn:
            inserted = conn.execute("""
                INSERT OR IGNORE INTO jobs (id, batch_id, idx, chunk_start, chunk_end, payload, state,
                                            attempt, max_attempts, deliveries, available_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, 0, ?, ?, ?)
            """, (job.id, job.batch_id, job.index, job.chunk_start, job.chunk_end, payload,
                  job.attempt, job.max_attempts, job.available_at or now_iso, now_iso, now_iso)).rowcount
        if inserted != 1:
            logger.debug("Job %s already enqueued, skipping", job.id)
        return inserted == 1

    def enqueue_many(self, jobs):
        with self.db.transaction():
            return sum(1 for job in jobs if self.enqueue(job))

    # ---------------- Consumer side ----------------
    def dequeue(self, lease_seconds, timeout=0.0, poll_interval=0.1, worker_id=None):
        deadline = time.monotonic() + timeout
        while True:
            claimed = self._claim_one(lease_seconds, worker_id)
            if claimed or time.monotonic() >= deadline:
                return claimed
            time.sleep(min(poll_interval, max(deadline - time.monotonic(), 0)))

    def _claim_one(self, lease_seconds, worker_id):
        """
        Atomically claim one job that is ready:
        - state = 'pending' and available_at <= now
        - OR state = 'processing' with an expired lease (redelivery)
        - its batch is not cancelled
        Preference: earliest available first, then batch order.
        """
        now = self.db.now()
        now_iso = to_iso(now)
        lease_until = now + timedelta(seconds=lease_seconds)
        token = uuid.uuid4().hex

        with self.db.transaction() as conn:
            row = conn.execute("""
                SELECT j.id, j.state FROM jobs j
                JOIN batches b ON b.id = j.batch_id
                WHERE b.state != ?
                AND (
                    (j.state='pending' AND j.available_at <= ?)
                    OR (j.state='processing' AND j.lease_until <= ?)
                )
                ORDER BY j.available_at ASC, j.batch_id ASC, j.idx ASC
                LIMIT 1
            """, (BATCH_CANCELLED, now_iso, now_iso)).fetchone()
            if not row:
                return None

            conn.execute("""
                UPDATE jobs
                SET state='processing', lease_token=?, lease_until=?, worker_id=?,
                    deliveries=deliveries + 1, started_at=?, updated_at=?
                WHERE id=?
            """, (token, to_iso(lease_until), worker_id, now_iso, now_iso, row["id"]))
            job = Job.from_row(conn.execute("SELECT * FROM jobs WHERE id=?", (row["id"],)).fetchone())

        if row["state"] == PROCESSING:
            logger.info("Job %s: lease expired, redelivering (delivery %d)", job.id, job.deliveries)
        return job, Lease(job_id=job.id, token=token, worker_id=worker_id, lease_expiry=lease_until,
                          previous_state=row["state"])

    def _check_lease(self, conn, job_id, lease_token):
        row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        if not row:
            raise JobNotFoundError(job_id)
        if (row["state"] != PROCESSING
                or row["lease_token"] != lease_token
                or from_iso(row["lease_until"]) <= self.db.now()):
            raise LeaseExpiredError(job_id)
        return row

    def _duration(self, row, now):
        started = from_iso(row["started_at"])
        return (now - started).total_seconds() if started else None

    def ack(self, job_id, lease_token):
        now = self.db.now()
        with self.db.transaction() as conn:
            row = self._check_lease(conn, job_id, lease_token)
            conn.execute("""
                UPDATE jobs
                SET state='completed', lease_token=NULL, lease_until=NULL, last_error=NULL,
                    finished_at=?, updated_at=?, duration_seconds=?
                WHERE id=?
            """, (to_iso(now), to_iso(now), self._duration(row, now), job_id))

    def nack(self, job_id, lease_token, delay, error=None):
        now = self.db.now()
        available_at = to_iso(now + timedelta(seconds=delay))
        with self.db.transaction() as conn:
            row = self._check_lease(conn, job_id, lease_token)
            conn.execute("""
                UPDATE jobs
                SET state='pending', attempt=attempt + 1, available_at=?, lease_token=NULL, lease_until=NULL,
                    last_error=?, updated_at=?, duration_seconds=?
                WHERE id=?
            """, (available_at, error, to_iso(now), self._duration(row, now), job_id))

    def extend_lease(self, job_id, lease_token, additional_seconds):
        now = self.db.now()
        with self.db.transaction() as conn:
            row = self._check_lease(conn, job_id, lease_token)
            new_expiry = max(from_iso(row["lease_until"]), now + timedelta(seconds=additional_seconds))
            conn.execute("UPDATE jobs SET lease_until=?, updated_at=? WHERE id=?",
                         (to_iso(new_expiry), to_iso(now), job_id))
        return new_expiry

    def dead_letter(self, job_id, lease_token, error, attempts_made):
        now = self.db.now()
        now_iso = to_iso(now)
        with self.db.transaction() as conn:
            row = self._check_lease(conn, job_id, lease_token)
            conn.execute("""
                UPDATE jobs
                SET state='dead', attempt=MAX(attempt, ?), lease_token=NULL, lease_until=NULL, last_error=?,
                    finished_at=?, updated_at=?, duration_seconds=?
                WHERE id=?
            """, (attempts_made, error, now_iso, now_iso, self._duration(row, now), job_id))
            conn.execute("""
                INSERT INTO dead_letters (job_id, batch_id, last_error, attempts_made, dead_lettered_at)
                VALUES (?, ?, ?, ?, ?)
            """, (job_id, row["batch_id"], error, attempts_made, now_iso))

    def decline(self, job_id, lease_token):
        now_iso = self.db.now_iso()
        with self.db.transaction() as conn:
            self._check_lease(conn, job_id, lease_token)
            conn.execute("""
                UPDATE jobs
                SET state='cancelled', lease_token=NULL, lease_until=NULL, updated_at=?
                WHERE id=?
            """, (now_iso, job_id))

    # ---------------- Operator side ----------------
    def requeue(self, job_id):
        """Move a dead-lettered job back to pending with ``attempt`` reset to 0."""
        now_iso = self.db.now_iso()
        with self.db.transaction() as conn:
            row = conn.execute("SELECT state FROM jobs WHERE id=?", (job_id,)).fetchone()
            if not row:
                raise JobNotFoundError(job_id)
            if row["state"] != DEAD:
                raise JobNotFoundError(job_id, f"job {job_id} is not dead-lettered (state={row['state']})")
            conn.execute("""
                UPDATE jobs
                SET state='pending', attempt=0, available_at=?, lease_token=NULL, lease_until=NULL,
                    worker_id=NULL, last_error=NULL, finished_at=NULL, updated_at=?
                WHERE id=?
            """, (now_iso, now_iso, job_id))
            conn.execute("UPDATE dead_letters SET replayed_at=? WHERE job_id=? AND replayed_at IS NULL",
                         (now_iso, job_id))

    def release_expired(self, older_than_seconds=0):
        """Return jobs whose lease expired at least ``older_than_seconds`` ago to pending."""
        now = self.db.now()
        cutoff = to_iso(now - timedelta(seconds=older_than_seconds))
        with self.db.transaction() as conn:
            rows = conn.execute("""
                SELECT id FROM jobs
                WHERE state='processing' AND lease_until IS NOT NULL AND lease_until <= ?
            """, (cutoff,)).fetchall()
            ids = [r["id"] for r in rows]
            if ids:
                conn.execute(f"""
                    UPDATE jobs
                    SET state='pending', worker_id=NULL, lease_token=NULL, lease_until=NULL,
                        available_at=?, updated_at=?
                    WHERE id IN ({",".join("?" for _ in ids)})
                """, (to_iso(now), to_iso(now), *ids))
        return ids

    def get_job(self, job_id):
        row = self.db.query_one("SELECT * FROM jobs WHERE id=?", (job_id,))
        if not row:
            raise JobNotFoundError(job_id)
        return Job.from_row(row)

    def list_jobs(self, batch_id=None, state=None, limit=None):
        clauses, params = [], []
        if batch_id:
            clauses.append("batch_id=?")
            params.append(batch_id)
        if state:
            clauses.append("state=?")
            params.append(state)
        sql = "SELECT * FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY batch_id, idx"
        if limit:
            sql += f" LIMIT {int(limit)}"
        return [Job.from_row(r) for r in self.db.query(sql, tuple(params))]

    def count_by_state(self, batch_id=None):
        if batch_id:
            rows = self.db.query("SELECT state, COUNT(*) AS c FROM jobs WHERE batch_id=? GROUP BY state", (batch_id,))
        else:
            rows = self.db.query("SELECT state, COUNT(*) AS c FROM jobs GROUP BY state")
        counts = {s: 0 for s in (PENDING, PROCESSING, COMPLETED, DEAD, CANCELLED)}
        counts.update({r["state"]: r["c"] for r in rows})
        return counts

    def list_dead_letters(self, batch_id=None, include_replayed=False):
        clauses, params = [], []
        if batch_id:
            clauses.append("batch_id=?")
            params.append(batch_id)
        if not include_replayed:
            clauses.append("replayed_at IS NULL")
        sql = "SELECT * FROM dead_letters"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        return [DeadLetterEntry.from_row(r) for r in self.db.query(sql, tuple(params))]
