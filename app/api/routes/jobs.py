import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse

from app.api.deps import get_job_service
from app.api.models import (
  JobListResponse,
  JobLogsResponse,
  JobResponse,
  Pagination,
  StartStorybookRequest,
  StartTrainingRequest,
  SuccessfulTraining,
  SuccessfulTrainingsResponse,
)
from app.jobs.models import JobKind, JobRecord, JobStatus
from app.jobs.serialization import serialize_record
from app.jobs.stream import JobEventStream, StreamFilter
from app.services.jobs import JobService
from app.storage.jobs_repo import JobQuery

router = APIRouter()
logger = logging.getLogger("app.api.routes.jobs")

_SSE_HEADERS = {"cache-control": "no-cache", "connection": "keep-alive", "x-accel-buffering": "no"}


def _to_response(record: JobRecord) -> JobResponse:
  return JobResponse.model_validate(serialize_record(record))


@router.post("/trainings", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_training(
  payload: StartTrainingRequest,
  service: JobService = Depends(get_job_service),  # noqa: B008
) -> JobResponse:
  """Start a model fine-tuning run."""
  return _to_response(await service.start_training(payload))


@router.post("/storybooks", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_storybook(
  payload: StartStorybookRequest,
  service: JobService = Depends(get_job_service),  # noqa: B008
) -> JobResponse:
  """Start an illustration run for a book."""
  return _to_response(await service.start_storybook(payload))


@router.get("/stream/live")
async def stream_jobs(
  request: Request,
  job_kind: JobKind | None = None,
  book_id: str | None = None,
  owner_id: str | None = None,
  job_id: str | None = None,
  service: JobService = Depends(get_job_service),  # noqa: B008
) -> StreamingResponse:
  """Push full job snapshots as Server-Sent Events."""
  stream = JobEventStream(
    service.broadcaster,
    stream_filter=StreamFilter(job_kind=job_kind, book_id=book_id, owner_id=owner_id, job_id=job_id),
    heartbeat_seconds=service.settings.stream_heartbeat_seconds,
    queue_size=service.settings.stream_queue_size,
    is_disconnected=request.is_disconnected,
  )
  return StreamingResponse(stream.frames(), media_type="text/event-stream", headers=_SSE_HEADERS)


@router.get("", response_model=JobListResponse)
async def list_jobs(
  job_kind: JobKind | None = None,
  status_filter: JobStatus | None = Query(default=None, alias="status"),  # noqa: B008
  owner_id: str | None = None,
  book_id: str | None = None,
  page: int = Query(default=1, ge=1),  # noqa: B008
  limit: int = Query(default=20, ge=1, le=100),  # noqa: B008
  sort_by: Literal["created_at", "updated_at", "status", "attempts"] = "created_at",
  sort_order: Literal["asc", "desc"] = "desc",
  service: JobService = Depends(get_job_service),  # noqa: B008
) -> JobListResponse:
  """List jobs for an authoritative refetch of paginated views."""
  query = JobQuery(job_kind=job_kind, status=status_filter, owner_id=owner_id, book_id=book_id, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)
  job_page, pagination = await service.list_jobs(query)
  return JobListResponse(items=[_to_response(item) for item in job_page.items], pagination=Pagination(**pagination), status_counts=job_page.status_counts)


@router.get("/trainings/successful", response_model=SuccessfulTrainingsResponse)
async def list_successful_trainings(
  owner_id: str = Query(min_length=1),  # noqa: B008
  service: JobService = Depends(get_job_service),  # noqa: B008
) -> SuccessfulTrainingsResponse:
  """Trainings that produced a usable model version for this owner."""
  records = await service.list_successful_trainings(owner_id)
  items = [
    SuccessfulTraining(job_id=record.job_id, label=record.label, version=str(record.result["version"]), weights=record.result.get("weights"), completed_at=record.completed_at)
    for record in records
    if record.result and record.result.get("version")
  ]
  return SuccessfulTrainingsResponse(owner_id=owner_id, items=items)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job_status(
  job_id: str,
  service: JobService = Depends(get_job_service),  # noqa: B008
) -> JobResponse:
  """Polling fallback: refresh from the provider when the job is still running."""
  return _to_response(await service.get_status(job_id))


@router.get("/{job_id}/logs", response_model=JobLogsResponse)
async def get_job_logs(
  job_id: str,
  limit: int = Query(default=0, ge=0, le=5000),  # noqa: B008
  order: Literal["asc", "desc"] = "desc",
  service: JobService = Depends(get_job_service),  # noqa: B008
) -> JobLogsResponse:
  """Return the latest provider log lines for a job."""
  return JobLogsResponse(**await service.get_logs(job_id, limit=limit, order=order))


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
  job_id: str,
  service: JobService = Depends(get_job_service),  # noqa: B008
) -> JobResponse:
  """Cancel a dispatched, non-terminal job at the provider."""
  return _to_response(await service.cancel(job_id))


@router.post("/{job_id}/dispatch", response_model=JobResponse)
async def redispatch_job(
  job_id: str,
  service: JobService = Depends(get_job_service),  # noqa: B008
) -> JobResponse:
  """Retry submission of a queued job whose earlier attempts failed."""
  return _to_response(await service.redispatch(job_id))


@router.post("/{job_id}/resync", response_model=JobResponse)
async def resync_job(
  job_id: str,
  service: JobService = Depends(get_job_service),  # noqa: B008
) -> JobResponse:
  """Re-check the provider and correct the stored status, even for finished jobs."""
  return _to_response(await service.resync(job_id))
