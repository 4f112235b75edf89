"""Shared FastAPI dependencies for the job pipeline."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from app.services.jobs import JobService


def get_job_service(request: Request) -> JobService:
  """Return the process-scoped job service built during startup."""
  service = getattr(request.app.state, "job_service", None)
  if service is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job pipeline is not initialized.")
  return service
