import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from app.config import get_settings
from app.core.database import dispose_engine
from app.core.logging import initialize_logging
from app.providers.replicate import ReplicateClient
from app.services.jobs import JobService
from app.storage.factory import build_jobs_repo


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging and build the process-scoped job pipeline."""
  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")
  initialize_logging(settings)

  if not settings.replicate_api_token:
    logger.warning("REPLICATE_API_TOKEN is not set; provider calls will be rejected.")
  if not settings.public_base_url:
    logger.warning("STORYBOOK_PUBLIC_BASE_URL is not set; jobs will rely on status polling instead of webhooks.")
  logger.info("Database target: %s", _redact_dsn(settings.pg_dsn))

  service = JobService(settings, build_jobs_repo(), ReplicateClient(settings))
  app.state.job_service = service
  logger.info("Job pipeline ready (max_attempts=%d heartbeat=%.0fs)", settings.job_max_attempts, settings.stream_heartbeat_seconds)

  try:
    yield
  finally:
    await service.aclose()
    await dispose_engine()
    logger.info("Shutdown complete.")


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"
