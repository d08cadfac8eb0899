"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from examforge.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

TASK_PROVIDERS = frozenset({"local-http", "gcp", "inline"})


@dataclass(frozen=True)
class Settings:
  """Typed settings for the examforge service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  task_service_provider: str
  cloud_tasks_queue_path: str | None
  cloud_run_invoker_service_account: str | None
  base_url: str | None
  task_secret: str | None
  task_dispatch_timeout_seconds: float
  gemini_api_key: str | None
  gemini_model: str
  gemini_input_price_per_million: float
  gemini_output_price_per_million: float
  generation_call_timeout_seconds: float
  per_call_cap: int
  buffer_ratio: float
  buffer_cap: int
  max_retries: int
  retry_base_delay_ms: int
  stale_after_seconds: int
  allow_failed_retry: bool


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("EXAMFORGE_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("EXAMFORGE_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("EXAMFORGE_ALLOWED_ORIGINS must not include wildcard origins.")

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

  environment = os.getenv("EXAMFORGE_ENV", "development").lower()
  debug = _parse_bool(os.getenv("EXAMFORGE_DEBUG"))

  log_max_bytes = _positive_int("EXAMFORGE_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("EXAMFORGE_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("EXAMFORGE_LOG_BACKUP_COUNT must be zero or a positive integer.")

  task_service_provider = os.getenv("EXAMFORGE_TASK_SERVICE_PROVIDER", "local-http").strip().lower()
  if task_service_provider not in TASK_PROVIDERS:
    raise ValueError(f"EXAMFORGE_TASK_SERVICE_PROVIDER must be one of {sorted(TASK_PROVIDERS)}.")

  # A ratio below 1 would plan fewer items than the section needs.
  buffer_ratio = float(os.getenv("EXAMFORGE_BUFFER_RATIO", "1.5"))
  if buffer_ratio < 1:
    raise ValueError("EXAMFORGE_BUFFER_RATIO must be at least 1.")

  buffer_cap = int(os.getenv("EXAMFORGE_BUFFER_CAP", "20"))
  if buffer_cap < 0:
    raise ValueError("EXAMFORGE_BUFFER_CAP must be zero or a positive integer.")

  max_retries = int(os.getenv("EXAMFORGE_MAX_RETRIES", "2"))
  if max_retries < 0:
    raise ValueError("EXAMFORGE_MAX_RETRIES must be zero or a positive integer.")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("EXAMFORGE_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("EXAMFORGE_LOG_HTTP_4XX")),
    pg_dsn=os.getenv("EXAMFORGE_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("EXAMFORGE_PG_CONNECT_TIMEOUT", "5"),
    task_service_provider=task_service_provider,
    cloud_tasks_queue_path=_optional_str(os.getenv("EXAMFORGE_CLOUD_TASKS_QUEUE_PATH")),
    cloud_run_invoker_service_account=_optional_str(os.getenv("EXAMFORGE_CLOUD_RUN_INVOKER_SERVICE_ACCOUNT")),
    base_url=_optional_str(os.getenv("EXAMFORGE_BASE_URL")),
    task_secret=_optional_str(os.getenv("EXAMFORGE_TASK_SECRET")),
    task_dispatch_timeout_seconds=_positive_float("EXAMFORGE_TASK_DISPATCH_TIMEOUT_SECONDS", "30"),
    gemini_api_key=_optional_str(os.getenv("GEMINI_API_KEY")),
    gemini_model=(os.getenv("EXAMFORGE_GEMINI_MODEL") or "gemini-2.5-flash").strip(),
    gemini_input_price_per_million=float(os.getenv("EXAMFORGE_GEMINI_INPUT_PRICE", "0.30")),
    gemini_output_price_per_million=float(os.getenv("EXAMFORGE_GEMINI_OUTPUT_PRICE", "2.50")),
    generation_call_timeout_seconds=_positive_float("EXAMFORGE_GENERATION_CALL_TIMEOUT_SECONDS", "120"),
    per_call_cap=_positive_int("EXAMFORGE_PER_CALL_CAP", "60"),
    buffer_ratio=buffer_ratio,
    buffer_cap=buffer_cap,
    max_retries=max_retries,
    retry_base_delay_ms=_positive_int("EXAMFORGE_RETRY_BASE_DELAY_MS", "2000"),
    stale_after_seconds=_positive_int("EXAMFORGE_STALE_AFTER_SECONDS", "420"),
    allow_failed_retry=_parse_bool(os.getenv("EXAMFORGE_ALLOW_FAILED_RETRY", "true")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Migrations and offline scripts must not depend on unrelated env vars.
  debug = _parse_bool(os.getenv("EXAMFORGE_DEBUG"))
  pg_connect_timeout = _positive_int("EXAMFORGE_PG_CONNECT_TIMEOUT", "5")
  pg_dsn = os.getenv("EXAMFORGE_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
