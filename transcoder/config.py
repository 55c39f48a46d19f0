"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class Settings:
  """Typed settings for the transcoding orchestrator."""

  environment: str
  debug: bool
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  worker_concurrency: int
  job_priority: int
  max_attempts: int
  backoff_base_seconds: float
  retain_completed: int
  retain_failed: int
  stall_interval_seconds: float
  max_stalled_count: int
  poll_interval_seconds: float
  poll_timeout_seconds: float
  shutdown_grace_seconds: float
  segment_duration_seconds: int
  generate_thumbnail: bool
  provider_base_url: str | None
  provider_api_key: str | None
  provider_timeout_seconds: float
  pg_dsn: str | None
  pg_connect_timeout: int
  notifications_webhook_url: str | None
  notifications_timeout_seconds: float


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  return value or None


def _positive_int(name: str, default: str, *, allow_zero: bool = False) -> int:
  raw = os.getenv(name, default)
  try:
    value = int(raw)
  except ValueError as exc:
    raise ValueError(f"{name} must be an integer.") from exc
  if value < 0 or (value == 0 and not allow_zero):
    qualifier = "zero or a positive" if allow_zero else "a positive"
    raise ValueError(f"{name} must be {qualifier} integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  raw = os.getenv(name, default)
  try:
    value = float(raw)
  except ValueError as exc:
    raise ValueError(f"{name} must be a number.") from exc
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("TRANSCODER_ENV", "development").lower()
  debug = _parse_bool(os.getenv("TRANSCODER_DEBUG"))
  log_dir = os.getenv("TRANSCODER_LOG_DIR", "./logs").strip()

  log_max_bytes = _positive_int("TRANSCODER_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = _positive_int("TRANSCODER_LOG_BACKUP_COUNT", "10", allow_zero=True)

  # Workers each hold a long-lived polling loop, so keep the default pool small.
  worker_concurrency = _positive_int("TRANSCODER_WORKER_CONCURRENCY", "2")
  job_priority = _positive_int("TRANSCODER_JOB_PRIORITY", "7", allow_zero=True)
  max_attempts = _positive_int("TRANSCODER_MAX_ATTEMPTS", "3")
  backoff_base_seconds = _positive_float("TRANSCODER_BACKOFF_BASE_SECONDS", "5")
  retain_completed = _positive_int("TRANSCODER_RETAIN_COMPLETED", "50", allow_zero=True)
  retain_failed = _positive_int("TRANSCODER_RETAIN_FAILED", "100", allow_zero=True)

  stall_interval_seconds = _positive_float("TRANSCODER_STALL_INTERVAL_SECONDS", "30")
  max_stalled_count = _positive_int("TRANSCODER_MAX_STALLED_COUNT", "1", allow_zero=True)
  poll_interval_seconds = _positive_float("TRANSCODER_POLL_INTERVAL_SECONDS", "30")
  poll_timeout_seconds = _positive_float("TRANSCODER_POLL_TIMEOUT_SECONDS", "1800")
  if poll_timeout_seconds < poll_interval_seconds:
    raise ValueError("TRANSCODER_POLL_TIMEOUT_SECONDS must not be shorter than TRANSCODER_POLL_INTERVAL_SECONDS.")
  shutdown_grace_seconds = _positive_float("TRANSCODER_SHUTDOWN_GRACE_SECONDS", "30")

  segment_duration_seconds = _positive_int("TRANSCODER_SEGMENT_DURATION_SECONDS", "6")
  generate_thumbnail = _parse_bool(os.getenv("TRANSCODER_GENERATE_THUMBNAIL"), default=True)

  provider_base_url = _optional_str(os.getenv("TRANSCODER_PROVIDER_BASE_URL"))
  provider_api_key = _optional_str(os.getenv("TRANSCODER_PROVIDER_API_KEY"))
  provider_timeout_seconds = _positive_float("TRANSCODER_PROVIDER_TIMEOUT_SECONDS", "10")

  pg_dsn = _optional_str(os.getenv("TRANSCODER_PG_DSN"))
  pg_connect_timeout = _positive_int("TRANSCODER_PG_CONNECT_TIMEOUT", "10")

  notifications_webhook_url = _optional_str(os.getenv("TRANSCODER_NOTIFICATIONS_WEBHOOK_URL"))
  notifications_timeout_seconds = _positive_float("TRANSCODER_NOTIFICATIONS_TIMEOUT_SECONDS", "10")

  return Settings(
    environment=environment,
    debug=debug,
    log_dir=log_dir,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    worker_concurrency=worker_concurrency,
    job_priority=job_priority,
    max_attempts=max_attempts,
    backoff_base_seconds=backoff_base_seconds,
    retain_completed=retain_completed,
    retain_failed=retain_failed,
    stall_interval_seconds=stall_interval_seconds,
    max_stalled_count=max_stalled_count,
    poll_interval_seconds=poll_interval_seconds,
    poll_timeout_seconds=poll_timeout_seconds,
    shutdown_grace_seconds=shutdown_grace_seconds,
    segment_duration_seconds=segment_duration_seconds,
    generate_thumbnail=generate_thumbnail,
    provider_base_url=provider_base_url,
    provider_api_key=provider_api_key,
    provider_timeout_seconds=provider_timeout_seconds,
    pg_dsn=pg_dsn,
    pg_connect_timeout=pg_connect_timeout,
    notifications_webhook_url=notifications_webhook_url,
    notifications_timeout_seconds=notifications_timeout_seconds,
  )
