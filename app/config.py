"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

DEFAULT_TRAINER_OWNER = "ostris"
DEFAULT_TRAINER_PROJECT = "flux-dev-lora-trainer"
DEFAULT_TRAINER_VERSION = "e440909d3512c31646ee2e0c7d6f6f4923224863a6a10c494606e79fb5844497"


@dataclass(frozen=True)
class Settings:
  """Typed settings for the storybook engine."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  replicate_api_token: str | None
  replicate_base_url: str
  replicate_timeout_seconds: float
  replicate_username: str | None
  replicate_webhook_secret: str | None
  trainer_owner: str
  trainer_project: str
  trainer_version: str
  public_base_url: str | None
  job_max_attempts: int
  dispatch_backoff_initial_ms: int
  dispatch_backoff_max_ms: int
  stream_heartbeat_seconds: float
  stream_queue_size: int
  subscriber_timeout_seconds: float
  max_tracked_logs: int


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("STORYBOOK_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("STORYBOOK_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("STORYBOOK_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("STORYBOOK_ENV", "development").lower()

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("STORYBOOK_DEBUG"))

  log_max_bytes = _positive_int("STORYBOOK_LOG_MAX_BYTES", "5242880")
  log_backup_count = int(os.getenv("STORYBOOK_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("STORYBOOK_LOG_BACKUP_COUNT must be zero or a positive integer.")

  job_max_attempts = _positive_int("STORYBOOK_JOB_MAX_ATTEMPTS", "2")
  backoff_initial_ms = int(os.getenv("STORYBOOK_DISPATCH_BACKOFF_INITIAL_MS", "500"))
  backoff_max_ms = int(os.getenv("STORYBOOK_DISPATCH_BACKOFF_MAX_MS", "8000"))
  if backoff_initial_ms < 0 or backoff_max_ms < backoff_initial_ms:
    raise ValueError("STORYBOOK_DISPATCH_BACKOFF_* must satisfy 0 <= initial <= max.")

  public_base_url = _optional_str(os.getenv("STORYBOOK_PUBLIC_BASE_URL"))
  if public_base_url and not public_base_url.startswith(("http://", "https://")):
    raise ValueError("STORYBOOK_PUBLIC_BASE_URL must be an absolute http(s) URL.")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("STORYBOOK_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("STORYBOOK_LOG_HTTP_4XX")),
    pg_dsn=os.getenv("STORYBOOK_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("STORYBOOK_PG_CONNECT_TIMEOUT", "5"),
    replicate_api_token=_optional_str(os.getenv("REPLICATE_API_TOKEN")),
    replicate_base_url=(os.getenv("STORYBOOK_REPLICATE_BASE_URL") or "https://api.replicate.com/v1").strip().rstrip("/"),
    replicate_timeout_seconds=_positive_float("STORYBOOK_REPLICATE_TIMEOUT_SECONDS", "30"),
    replicate_username=_optional_str(os.getenv("STORYBOOK_REPLICATE_USERNAME")),
    replicate_webhook_secret=_optional_str(os.getenv("STORYBOOK_REPLICATE_WEBHOOK_SECRET")),
    trainer_owner=os.getenv("STORYBOOK_TRAINER_OWNER", DEFAULT_TRAINER_OWNER),
    trainer_project=os.getenv("STORYBOOK_TRAINER_PROJECT", DEFAULT_TRAINER_PROJECT),
    trainer_version=os.getenv("STORYBOOK_TRAINER_VERSION", DEFAULT_TRAINER_VERSION),
    public_base_url=public_base_url.rstrip("/") if public_base_url else None,
    job_max_attempts=job_max_attempts,
    dispatch_backoff_initial_ms=backoff_initial_ms,
    dispatch_backoff_max_ms=backoff_max_ms,
    stream_heartbeat_seconds=_positive_float("STORYBOOK_STREAM_HEARTBEAT_SECONDS", "25"),
    stream_queue_size=_positive_int("STORYBOOK_STREAM_QUEUE_SIZE", "256"),
    subscriber_timeout_seconds=_positive_float("STORYBOOK_SUBSCRIBER_TIMEOUT_SECONDS", "2"),
    max_tracked_logs=_positive_int("STORYBOOK_MAX_TRACKED_LOGS", "500"),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Keep database configuration isolated so migrations don't require unrelated env vars.
  debug = _parse_bool(os.getenv("STORYBOOK_DEBUG"))
  pg_connect_timeout = int(os.getenv("STORYBOOK_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("STORYBOOK_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = os.getenv("STORYBOOK_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
