from app.config import Settings, get_settings
from app.storage.jobs_repo import JobsRepository
from app.storage.postgres_jobs_repo import PostgresJobsRepository


def build_jobs_repo(settings: Settings | None = None) -> JobsRepository:
  """Return the active jobs repository."""
  active = settings or get_settings()

  # Job records must survive restarts and be shared across workers.
  if not active.pg_dsn:
    raise ValueError("STORYBOOK_PG_DSN must be set to enable Postgres persistence.")

  return PostgresJobsRepository()
