# batches.py
import logging

from errors import BatchNotFoundError
from feedback import ChunkSizeAdvisor
from models import (
    BATCH_ACTIVE, BATCH_CANCELLED, BATCH_COMPLETED, DEAD, BatchManifest, BatchStatus,
)
from partitioner import partition
from progress import ProgressTracker
from queue_client import SQLiteQueue
from settings import load_settings
from storage import Storage

logger = logging.getLogger(__name__)


class BatchService:
    """Submit, status, cancel and dead-letter replay for batches."""

    def __init__(self, db=None, settings=None):
        self.db = db or Storage()
        self.settings = settings or load_settings(self.db)
        self.queue = SQLiteQueue(self.db)
        self.tracker = ProgressTracker(self.db, error_sample_limit=self.settings.error_sample_limit)
        self.advisor = ChunkSizeAdvisor(self.db, threshold_seconds=self.settings.latency_threshold)

    # ---------------- Submit ----------------
    def plan(self, total_records=None, records=None, chunk_size=None, max_attempts=None, batch_id=None):
        """Partition without touching the queue."""
        return partition(
            total_records,
            chunk_size if chunk_size is not None else self.settings.chunk_size,
            max_attempts=max_attempts if max_attempts is not None else self.settings.max_attempts,
            batch_id=batch_id,
            records=records,
        )

    def create_batch(self, total_records=None, records=None, chunk_size=None, max_attempts=None,
                     batch_id=None, dry_run=False):
        manifest, jobs = self.plan(total_records, records, chunk_size, max_attempts, batch_id)
        if dry_run:
            logger.info("Batch %s: dry run, %d jobs not enqueued", manifest.batch_id, manifest.job_count)
            return manifest.batch_id

        now_iso = self.db.now_iso()
        with self.db.transaction() as conn:
            existing = conn.execute("SELECT id FROM batches WHERE id=?", (manifest.batch_id,)).fetchone()
            if existing:
                logger.info("Batch %s already exists, not re-enqueueing", manifest.batch_id)
                return manifest.batch_id
            conn.execute("""
                INSERT INTO batches (id, total_records, chunk_size, job_count, max_attempts, state,
                                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (manifest.batch_id, manifest.total_records, manifest.chunk_size, manifest.job_count,
                  manifest.max_attempts, BATCH_ACTIVE, manifest.created_at, now_iso))
            self.tracker.create(manifest)
            self.queue.enqueue_many(jobs)
            if manifest.job_count == 0:
                conn.execute("UPDATE batches SET state=?, completed_at=? WHERE id=?",
                             (BATCH_COMPLETED, now_iso, manifest.batch_id))

        logger.info("Batch %s: created (records=%d, chunk_size=%d, jobs=%d, max_attempts=%d)",
                    manifest.batch_id, manifest.total_records, manifest.chunk_size, manifest.job_count,
                    manifest.max_attempts)
        advice = self.advisor.recommend(manifest.chunk_size)
        if advice.should_reduce:
            logger.warning("Batch %s: queue is under pressure, consider chunk_size=%d for future batches (%s)",
                           manifest.batch_id, advice.recommended_chunk_size, advice.reason)
        return manifest.batch_id

    # ---------------- Status ----------------
    def get_manifest(self, batch_id):
        row = self.db.query_one("SELECT * FROM batches WHERE id=?", (batch_id,))
        if not row:
            raise BatchNotFoundError(batch_id)
        return BatchManifest.from_row(row)

    def get_batch_status(self, batch_id):
        row = self.db.query_one("SELECT * FROM batches WHERE id=?", (batch_id,))
        if not row:
            raise BatchNotFoundError(batch_id)
        progress = self.tracker.snapshot(batch_id)
        return BatchStatus(
            batch_id=batch_id,
            state=row["state"],
            total=progress.job_count,
            succeeded=progress.succeeded_count,
            failed_in_retry=progress.failed_count,
            dead_lettered=progress.dead_lettered_count,
            terminal=progress.terminal,
            total_records=row["total_records"],
            chunk_size=row["chunk_size"],
            failed_attempts=progress.failed_attempts,
            error_samples=progress.error_samples,
        )

    def list_batches(self, state=None, limit=50):
        if state:
            rows = self.db.query("SELECT id FROM batches WHERE state=? ORDER BY created_at DESC LIMIT ?",
                                 (state, limit))
        else:
            rows = self.db.query("SELECT id FROM batches ORDER BY created_at DESC LIMIT ?", (limit,))
        return [self.get_batch_status(r["id"]) for r in rows]

    # ---------------- Cancel ----------------
    def cancel_batch(self, batch_id):
        """Stop workers from starting more jobs of this batch. Returns False if it already finished."""
        now_iso = self.db.now_iso()
        with self.db.transaction() as conn:
            row = conn.execute("SELECT state FROM batches WHERE id=?", (batch_id,)).fetchone()
            if not row:
                raise BatchNotFoundError(batch_id)
            if row["state"] != BATCH_ACTIVE:
                return row["state"] == BATCH_CANCELLED
            conn.execute("UPDATE batches SET state=?, cancelled_at=?, updated_at=? WHERE id=?",
                         (BATCH_CANCELLED, now_iso, now_iso, batch_id))
        logger.info("Batch %s: active → cancelled", batch_id)
        return True

    # ---------------- Dead letters ----------------
    def list_dead_letters(self, batch_id=None, include_replayed=False):
        return self.queue.list_dead_letters(batch_id=batch_id, include_replayed=include_replayed)

    def requeue_dead_letter(self, job_id):
        with self.db.transaction():
            job = self.queue.get_job(job_id)
            self.queue.requeue(job_id)
            if job.state == DEAD:
                self.tracker.reopen(job.batch_id)
        logger.info("Job %s: dead → pending (replayed, attempt reset to 0)", job_id)
        return True
