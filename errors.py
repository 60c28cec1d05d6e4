# errors.py


class BatchError(Exception):
    """Base class for every error raised by batchctl."""


class InvalidConfigError(BatchError):
    """Bad partition or worker parameters. Fatal, never retried."""


class TransientProcessingError(BatchError):
    """Job logic failed in a way that is expected to succeed on retry."""


class PermanentProcessingError(BatchError):
    """Job logic decided retrying is futile (poison chunk)."""


class LeaseExpiredError(BatchError):
    """Ack/nack attempted with a lease that is no longer the active one."""

    def __init__(self, job_id, message=None):
        self.job_id = job_id
        super().__init__(message or f"lease on job {job_id} expired or was superseded")


class QueueUnavailableError(BatchError):
    """The queue backend could not be reached."""


class BatchNotFoundError(BatchError, LookupError):
    def __init__(self, batch_id):
        self.batch_id = batch_id
        super().__init__(f"batch {batch_id} not found")


class JobNotFoundError(BatchError, LookupError):
    def __init__(self, job_id, message=None):
        self.job_id = job_id
        super().__init__(message or f"job {job_id} not found")


class BatchStateError(BatchError):
    """The batch exists but its counters do not allow the requested change."""

    def __init__(self, batch_id, message):
        self.batch_id = batch_id
        super().__init__(f"batch {batch_id}: {message}")
