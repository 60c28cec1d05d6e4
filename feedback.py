# feedback.py
import logging
from dataclasses import dataclass
from typing import Optional

from errors import InvalidConfigError

logger = logging.getLogger(__name__)

DEFAULT_LATENCY_THRESHOLD = 0.5
DEFAULT_WINDOW = 50
DEFAULT_MIN_SAMPLES = 10
DEFAULT_RETENTION = 5000


@dataclass(frozen=True)
class ChunkSizeAdvice:
    current_chunk_size: int
    recommended_chunk_size: int
    mean_latency: Optional[float]
    samples: int
    sustained: bool
    reason: str

    @property
    def should_reduce(self):
        return self.recommended_chunk_size < self.current_chunk_size

    def as_dict(self):
        return {
            "current_chunk_size": self.current_chunk_size,
            "recommended_chunk_size": self.recommended_chunk_size,
            "mean_latency": self.mean_latency,
            "samples": self.samples,
            "sustained": self.sustained,
            "reason": self.reason,
        }


class ChunkSizeAdvisor:
    """Turns queue round-trip latency into a chunk-size recommendation.

    Workers report how long dequeue/ack/nack round-trips take. When the mean
    over the last ``window`` samples stays above ``threshold_seconds`` the
    advisor suggests shrinking the chunk size for batches partitioned from
    now on. It only ever returns advice; manifests are never touched.
    """

    def __init__(self, db, threshold_seconds=DEFAULT_LATENCY_THRESHOLD, window=DEFAULT_WINDOW,
                 min_samples=DEFAULT_MIN_SAMPLES, reduction_factor=0.5, min_chunk_size=1,
                 retention=DEFAULT_RETENTION):
        if not 0 < reduction_factor < 1:
            raise InvalidConfigError(f"reduction_factor must be in (0, 1), got {reduction_factor!r}")
        if min_samples > window:
            raise InvalidConfigError("min_samples cannot exceed window")
        self.db = db
        self.threshold_seconds = threshold_seconds
        self.window = window
        self.min_samples = min_samples
        self.reduction_factor = reduction_factor
        self.min_chunk_size = min_chunk_size
        self.retention = retention

    def record(self, operation, seconds, worker_id=None):
        self.record_many([(operation, seconds)], worker_id=worker_id)

    def record_many(self, samples, worker_id=None):
        if not samples:
            return
        now_iso = self.db.now_iso()
        with self.db.transaction() as conn:
            conn.executemany("""
                INSERT INTO latency_samples (worker_id, operation, seconds, recorded_at) VALUES (?, ?, ?, ?)
            """, [(worker_id, op, seconds, now_iso) for op, seconds in samples])
            conn.execute("""
                DELETE FROM latency_samples
                WHERE id <= (SELECT MAX(id) FROM latency_samples) - ?
            """, (self.retention,))

    def recent_latencies(self):
        rows = self.db.query("SELECT seconds FROM latency_samples ORDER BY id DESC LIMIT ?", (self.window,))
        return [r["seconds"] for r in rows]

    def recommend(self, current_chunk_size):
        if current_chunk_size <= 0:
            raise InvalidConfigError(f"chunk_size must be positive, got {current_chunk_size!r}")
        latencies = self.recent_latencies()
        if len(latencies) < self.min_samples:
            return ChunkSizeAdvice(current_chunk_size, current_chunk_size, None, len(latencies), False,
                                   f"not enough samples ({len(latencies)}/{self.min_samples})")

        mean = sum(latencies) / len(latencies)
        if mean <= self.threshold_seconds:
            return ChunkSizeAdvice(current_chunk_size, current_chunk_size, mean, len(latencies), False,
                                   f"mean latency {mean:.3f}s within {self.threshold_seconds:.3f}s")

        recommended = max(self.min_chunk_size, int(current_chunk_size * self.reduction_factor))
        recommended = min(recommended, current_chunk_size)
        logger.warning("Queue round-trip latency %.3fs above %.3fs; recommend chunk_size %d (was %d)",
                       mean, self.threshold_seconds, recommended, current_chunk_size)
        return ChunkSizeAdvice(current_chunk_size, recommended, mean, len(latencies), True,
                               f"mean latency {mean:.3f}s above {self.threshold_seconds:.3f}s")
