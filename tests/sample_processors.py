"""Chunk processors loaded by name from the CLI tests."""
from errors import PermanentProcessingError


def succeed(job, ctx):
    return sum(1 for _ in job.records)


def poison(job, ctx):
    raise PermanentProcessingError(f"malformed chunk {job.chunk_start}-{job.chunk_end}")
