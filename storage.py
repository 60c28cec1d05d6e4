# storage.py
import os
import sqlite3
import threading
from contextlib import contextmanager

from errors import QueueUnavailableError
from models import to_iso, utcnow

DEFAULT_DB_PATH = "batchctl.db"


class Storage:
    """SQLite store shared by every worker process.

    Holds the job queue, the batch manifests, the progress counters, the
    dead-letter list, latency samples and runtime config. The connection is
    in autocommit mode; writes go through ``transaction()`` which opens a
    ``BEGIN IMMEDIATE`` transaction so concurrent processes serialise on the
    database write lock. Transactions nest: only the outermost one commits.
    """

    def __init__(self, db_path=None, clock=None, busy_timeout=30.0):
        self.db_path = db_path or os.environ.get("BATCHCTL_DB", DEFAULT_DB_PATH)
        self.clock = clock or utcnow
        self._lock = threading.RLock()
        self._depth = 0
        try:
            self.conn = sqlite3.connect(
                self.db_path,
                timeout=busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"cannot open {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row

        # Better concurrency for multiple workers
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_schema()

    def _init_schema(self):
        self.conn.executescript("""
        CREATE TABLE IF NOT EXISTS batches (
            id TEXT PRIMARY KEY,
            total_records INTEGER NOT NULL,
            chunk_size INTEGER NOT NULL,
            job_count INTEGER NOT NULL,
            max_attempts INTEGER NOT NULL,
            state TEXT NOT NULL DEFAULT 'active',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT,
            cancelled_at TEXT
        );

        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            batch_id TEXT NOT NULL REFERENCES batches(id),
            idx INTEGER NOT NULL,
            chunk_start INTEGER NOT NULL,
            chunk_end INTEGER NOT NULL,
            payload TEXT,
            state TEXT NOT NULL,
            attempt INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            deliveries INTEGER NOT NULL DEFAULT 0,
            available_at TEXT NOT NULL,
            lease_token TEXT,
            lease_until TEXT,
            worker_id TEXT,
            last_error TEXT,
            started_at TEXT,
            finished_at TEXT,
            duration_seconds REAL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_jobs_ready ON jobs(state, available_at);
        CREATE INDEX IF NOT EXISTS idx_jobs_batch ON jobs(batch_id, idx);

        CREATE TABLE IF NOT EXISTS progress (
            batch_id TEXT PRIMARY KEY REFERENCES batches(id),
            job_count INTEGER NOT NULL,
            succeeded INTEGER NOT NULL DEFAULT 0,
            failed INTEGER NOT NULL DEFAULT 0,
            dead_lettered INTEGER NOT NULL DEFAULT 0,
            failed_attempts INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS error_samples (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            batch_id TEXT NOT NULL,
            job_id TEXT NOT NULL,
            error TEXT NOT NULL,
            recorded_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_error_samples_batch ON error_samples(batch_id, id);

        CREATE TABLE IF NOT EXISTS dead_letters (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL,
            batch_id TEXT NOT NULL,
            last_error TEXT,
            attempts_made INTEGER NOT NULL,
            dead_lettered_at TEXT NOT NULL,
            replayed_at TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_dead_letters_job ON dead_letters(job_id);

        CREATE TABLE IF NOT EXISTS latency_samples (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            worker_id TEXT,
            operation TEXT NOT NULL,
            seconds REAL NOT NULL,
            recorded_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """)

    def now(self):
        return self.clock()

    def now_iso(self):
        return to_iso(self.clock())

    @contextmanager
    def transaction(self):
        with self._lock:
            outer = self._depth == 0
            if outer:
                try:
                    self.conn.execute("BEGIN IMMEDIATE")
                except sqlite3.OperationalError as e:
                    raise QueueUnavailableError(f"cannot start transaction: {e}") from e
            self._depth += 1
            try:
                yield self.conn
                if outer:
                    self.conn.execute("COMMIT")
            except sqlite3.OperationalError as e:
                if outer:
                    self._rollback()
                raise QueueUnavailableError(str(e)) from e
            except BaseException:
                if outer:
                    self._rollback()
                raise
            finally:
                self._depth -= 1

    def _rollback(self):
        if self.conn.in_transaction:
            self.conn.execute("ROLLBACK")

    def query(self, sql, params=()):
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.OperationalError as e:
                raise QueueUnavailableError(str(e)) from e

    def query_one(self, sql, params=()):
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def close(self):
        with self._lock:
            self.conn.close()

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        row = self.query_one("SELECT value FROM config WHERE key=?", (key,))
        return row["value"] if row else default

    def set_config(self, key, value):
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), self.now_iso()))

    def delete_config(self, key):
        with self.transaction() as conn:
            conn.execute("DELETE FROM config WHERE key=?", (key,))

    def list_config(self):
        return self.query("SELECT key, value, updated_at FROM config ORDER BY key")
