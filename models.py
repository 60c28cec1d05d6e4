# models.py
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

# Job states
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
DEAD = "dead"  # DLQ
CANCELLED = "cancelled"

# Batch states
BATCH_ACTIVE = "active"
BATCH_COMPLETED = "completed"
BATCH_CANCELLED = "cancelled"

# Progress counter kinds
SUCCEEDED = "succeeded"
FAILED = "failed"
DEAD_LETTERED = "dead_lettered"
PROGRESS_KINDS = (SUCCEEDED, FAILED, DEAD_LETTERED)


def utcnow():
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def job_count_for(total_records: int, chunk_size: int) -> int:
    return -(-total_records // chunk_size)


@dataclass(frozen=True)
class BatchManifest:
    batch_id: str
    total_records: int
    chunk_size: int
    job_count: int
    max_attempts: int = 3
    created_at: str = field(default_factory=lambda: to_iso(utcnow()))

    @classmethod
    def from_row(cls, row):
        return cls(
            batch_id=row["id"],
            total_records=row["total_records"],
            chunk_size=row["chunk_size"],
            job_count=row["job_count"],
            max_attempts=row["max_attempts"],
            created_at=row["created_at"],
        )


@dataclass
class Job:
    id: str
    batch_id: str
    index: int
    chunk_start: int
    chunk_end: int   # half-open
    payload: Optional[list] = None
    attempt: int = 0
    max_attempts: int = 3
    state: str = PENDING   # pending | processing | completed | dead | cancelled
    deliveries: int = 0
    available_at: Optional[str] = None
    lease_token: Optional[str] = None
    lease_until: Optional[str] = None
    worker_id: Optional[str] = None
    last_error: Optional[str] = None
    created_at: str = field(default_factory=lambda: to_iso(utcnow()))
    updated_at: str = field(default_factory=lambda: to_iso(utcnow()))

    @property
    def size(self):
        return self.chunk_end - self.chunk_start

    @property
    def records(self):
        """Record identifiers covered by this chunk."""
        if self.payload is not None:
            return list(self.payload)
        return range(self.chunk_start, self.chunk_end)

    @classmethod
    def from_row(cls, row):
        payload = row["payload"]
        return cls(
            id=row["id"],
            batch_id=row["batch_id"],
            index=row["idx"],
            chunk_start=row["chunk_start"],
            chunk_end=row["chunk_end"],
            payload=json.loads(payload) if payload is not None else None,
            attempt=row["attempt"],
            max_attempts=row["max_attempts"],
            state=row["state"],
            deliveries=row["deliveries"],
            available_at=row["available_at"],
            lease_token=row["lease_token"],
            lease_until=row["lease_until"],
            worker_id=row["worker_id"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class Lease:
    job_id: str
    token: str
    worker_id: Optional[str]
    lease_expiry: datetime
    previous_state: str = PENDING   # processing when the job was redelivered after an expired lease


@dataclass
class ProgressRecord:
    batch_id: str
    job_count: int
    succeeded_count: int = 0
    failed_count: int = 0
    dead_lettered_count: int = 0
    failed_attempts: int = 0
    error_samples: List[str] = field(default_factory=list)

    @property
    def settled(self):
        return self.succeeded_count + self.dead_lettered_count

    @property
    def terminal(self):
        return self.settled == self.job_count


@dataclass(frozen=True)
class DeadLetterEntry:
    job_id: str
    batch_id: str
    last_error: Optional[str]
    attempts_made: int
    dead_lettered_at: str
    replayed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row):
        return cls(
            job_id=row["job_id"],
            batch_id=row["batch_id"],
            last_error=row["last_error"],
            attempts_made=row["attempts_made"],
            dead_lettered_at=row["dead_lettered_at"],
            replayed_at=row["replayed_at"],
        )


@dataclass
class BatchStatus:
    batch_id: str
    state: str
    total: int
    succeeded: int
    failed_in_retry: int
    dead_lettered: int
    terminal: bool
    total_records: int = 0
    chunk_size: int = 0
    failed_attempts: int = 0
    error_samples: List[str] = field(default_factory=list)

    @property
    def cancelled(self):
        return self.state == BATCH_CANCELLED

    def as_dict(self):
        return {
            "batch_id": self.batch_id,
            "state": self.state,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed_in_retry": self.failed_in_retry,
            "dead_lettered": self.dead_lettered,
            "terminal": self.terminal,
            "cancelled": self.cancelled,
            "total_records": self.total_records,
            "chunk_size": self.chunk_size,
            "failed_attempts": self.failed_attempts,
            "error_samples": list(self.error_samples),
        }
