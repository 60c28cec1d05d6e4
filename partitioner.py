# partitioner.py
"""Split a record set into fixed-size chunks, one job per chunk.

Chunk size is the backpressure knob: smaller chunks lower the peak memory a
single job needs, larger chunks cut queue round-trips. The partitioner never
picks it; see ``feedback.ChunkSizeAdvisor`` for a recommendation.
"""
import uuid

from errors import InvalidConfigError
from models import BatchManifest, Job, job_count_for


def new_batch_id():
    return f"batch-{uuid.uuid4().hex[:12]}"


def job_id_for(batch_id, index):
    return f"{batch_id}:{index:06d}"


def partition(total_records, chunk_size, max_attempts=3, batch_id=None, records=None):
    """Return ``(BatchManifest, jobs)`` covering ``[0, total_records)``.

    When ``records`` is given, each job also carries the slice of record
    identifiers for its range and ``total_records`` defaults to its length.
    Nothing is enqueued here.
    """
    if records is not None:
        records = list(records)
        if total_records is None:
            total_records = len(records)
        elif total_records != len(records):
            raise InvalidConfigError(
                f"total_records={total_records} does not match {len(records)} supplied records")
    if total_records is None:
        raise InvalidConfigError("total_records or records is required")
    if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size <= 0:
        raise InvalidConfigError(f"chunk_size must be a positive integer, got {chunk_size!r}")
    if isinstance(total_records, bool) or not isinstance(total_records, int) or total_records < 0:
        raise InvalidConfigError(f"total_records must be a non-negative integer, got {total_records!r}")
    if max_attempts < 1:
        raise InvalidConfigError(f"max_attempts must be >= 1, got {max_attempts!r}")

    batch_id = batch_id or new_batch_id()
    manifest = BatchManifest(
        batch_id=batch_id,
        total_records=total_records,
        chunk_size=chunk_size,
        job_count=job_count_for(total_records, chunk_size),
        max_attempts=max_attempts,
    )

    jobs = []
    for index, start in enumerate(range(0, total_records, chunk_size)):
        end = min(start + chunk_size, total_records)
        jobs.append(Job(
            id=job_id_for(batch_id, index),
            batch_id=batch_id,
            index=index,
            chunk_start=start,
            chunk_end=end,
            payload=records[start:end] if records is not None else None,
            max_attempts=max_attempts,
        ))
    return manifest, jobs
