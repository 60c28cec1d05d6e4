# settings.py
from dataclasses import dataclass, fields

from errors import InvalidConfigError


@dataclass
class Settings:
    chunk_size: int = 500
    lease_seconds: float = 30.0
    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_cap: float = 300.0
    worker_concurrency: int = 1
    poll_interval: float = 1.0
    latency_threshold: float = 0.5
    error_sample_limit: int = 20

    def validate(self):
        if self.chunk_size <= 0:
            raise InvalidConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.lease_seconds <= 0:
            raise InvalidConfigError(f"lease_seconds must be positive, got {self.lease_seconds}")
        if self.max_attempts < 1:
            raise InvalidConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_base < 0 or self.backoff_cap < self.backoff_base:
            raise InvalidConfigError(
                f"need 0 <= backoff_base <= backoff_cap, got {self.backoff_base} / {self.backoff_cap}")
        if self.worker_concurrency < 1:
            raise InvalidConfigError(f"worker_concurrency must be >= 1, got {self.worker_concurrency}")
        if self.poll_interval <= 0:
            raise InvalidConfigError(f"poll_interval must be positive, got {self.poll_interval}")
        if self.error_sample_limit < 1:
            raise InvalidConfigError(f"error_sample_limit must be >= 1, got {self.error_sample_limit}")
        return self


def _coerce(name, typ, raw):
    try:
        return typ(raw)
    except (TypeError, ValueError) as e:
        raise InvalidConfigError(f"{name}: cannot parse {raw!r} as {typ.__name__}") from e


def load_settings(db=None, **overrides):
    """Resolve each setting: explicit override > config table > default."""
    values = {}
    for f in fields(Settings):
        typ = type(f.default)
        raw = overrides.get(f.name)
        if raw is None and db is not None:
            raw = db.get_config(f.name)
        if raw is not None:
            values[f.name] = _coerce(f.name, typ, raw)
    return Settings(**values).validate()
