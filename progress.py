# progress.py
import logging

from errors import BatchNotFoundError, BatchStateError
from models import BATCH_ACTIVE, BATCH_COMPLETED, DEAD_LETTERED, FAILED, PROGRESS_KINDS, SUCCEEDED, ProgressRecord

logger = logging.getLogger(__name__)

DEFAULT_ERROR_SAMPLE_LIMIT = 20

_COLUMNS = {SUCCEEDED: "succeeded", FAILED: "failed", DEAD_LETTERED: "dead_lettered"}


class ProgressTracker:
    """Per-batch counters kept in the shared store.

    Every mutation is a single ``UPDATE ... SET col = col + n`` statement, so
    concurrent workers in different processes never read-then-write.
    ``failed`` counts jobs that are currently waiting for a retry; a job
    leaves it in the same statement that settles it as succeeded or
    dead-lettered, or through ``release_retry`` when it is declined.
    """

    def __init__(self, db, error_sample_limit=DEFAULT_ERROR_SAMPLE_LIMIT):
        self.db = db
        self.error_sample_limit = error_sample_limit

    def create(self, manifest):
        with self.db.transaction() as conn:
            conn.execute("""
                INSERT OR IGNORE INTO progress (batch_id, job_count, updated_at)
                VALUES (?, ?, ?)
            """, (manifest.batch_id, manifest.job_count, self.db.now_iso()))

    def increment(self, batch_id, kind, leaving_retry=False, amount=1):
        if kind not in PROGRESS_KINDS:
            raise ValueError(f"unknown progress kind {kind!r}")
        column = _COLUMNS[kind]
        assignments = f"{column} = {column} + ?"
        if leaving_retry and kind != FAILED:
            assignments += ", failed = failed - 1"
        with self.db.transaction() as conn:
            updated = conn.execute(f"""
                UPDATE progress SET {assignments}, updated_at = ?
                WHERE batch_id = ?
            """, (amount, self.db.now_iso(), batch_id)).rowcount
            if updated != 1:
                raise BatchNotFoundError(batch_id)
            if kind != FAILED:
                self._archive_if_terminal(conn, batch_id)

    def release_retry(self, batch_id):
        """A job waiting for retry left without settling (its batch was cancelled)."""
        self._decrement(batch_id, "failed", "no job is waiting for retry")

    def reopen(self, batch_id):
        """A dead-lettered job was replayed: it is back in flight."""
        with self.db.transaction() as conn:
            self._decrement(batch_id, "dead_lettered", "no dead-lettered job to reopen")
            conn.execute("""
                UPDATE batches SET state=?, completed_at=NULL, updated_at=?
                WHERE id=? AND state=?
            """, (BATCH_ACTIVE, self.db.now_iso(), batch_id, BATCH_COMPLETED))

    def _decrement(self, batch_id, column, empty_message):
        with self.db.transaction() as conn:
            updated = conn.execute(f"""
                UPDATE progress SET {column} = {column} - 1, updated_at = ?
                WHERE batch_id = ? AND {column} > 0
            """, (self.db.now_iso(), batch_id)).rowcount
            if updated == 1:
                return
            if conn.execute("SELECT 1 FROM progress WHERE batch_id=?", (batch_id,)).fetchone():
                raise BatchStateError(batch_id, empty_message)
            raise BatchNotFoundError(batch_id)

    def record_failure(self, batch_id, job_id, error):
        """Count one failed execution and keep the newest error samples."""
        now_iso = self.db.now_iso()
        with self.db.transaction() as conn:
            conn.execute("""
                UPDATE progress SET failed_attempts = failed_attempts + 1, updated_at = ?
                WHERE batch_id = ?
            """, (now_iso, batch_id))
            conn.execute("""
                INSERT INTO error_samples (batch_id, job_id, error, recorded_at) VALUES (?, ?, ?, ?)
            """, (batch_id, job_id, f"{job_id}: {error}", now_iso))
            conn.execute("""
                DELETE FROM error_samples
                WHERE batch_id = ? AND id NOT IN (
                    SELECT id FROM error_samples WHERE batch_id = ? ORDER BY id DESC LIMIT ?
                )
            """, (batch_id, batch_id, self.error_sample_limit))

    def _archive_if_terminal(self, conn, batch_id):
        row = conn.execute("SELECT succeeded, dead_lettered, job_count FROM progress WHERE batch_id=?",
                           (batch_id,)).fetchone()
        if row["succeeded"] + row["dead_lettered"] != row["job_count"]:
            return
        archived = conn.execute("""
            UPDATE batches SET state=?, completed_at=?, updated_at=?
            WHERE id=? AND state=?
        """, (BATCH_COMPLETED, self.db.now_iso(), self.db.now_iso(), batch_id, BATCH_ACTIVE)).rowcount
        if archived:
            logger.info("Batch %s: active → completed (succeeded=%d, dead_lettered=%d)",
                        batch_id, row["succeeded"], row["dead_lettered"])

    def snapshot(self, batch_id):
        row = self.db.query_one("SELECT * FROM progress WHERE batch_id=?", (batch_id,))
        if not row:
            raise BatchNotFoundError(batch_id)
        samples = self.db.query("SELECT error FROM error_samples WHERE batch_id=? ORDER BY id", (batch_id,))
        return ProgressRecord(
            batch_id=batch_id,
            job_count=row["job_count"],
            succeeded_count=row["succeeded"],
            failed_count=row["failed"],
            dead_lettered_count=row["dead_lettered"],
            failed_attempts=row["failed_attempts"],
            error_samples=[r["error"] for r in samples],
        )

    def is_terminal(self, batch_id):
        return self.snapshot(batch_id).terminal
