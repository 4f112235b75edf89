"""Job commands exposed to the HTTP layer: start, cancel, poll, list."""

from __future__ import annotations

import logging
import math
from typing import Any

from app.api.models import StartStorybookRequest, StartTrainingRequest
from app.config import Settings
from app.jobs.broadcaster import JobBroadcaster
from app.jobs.dispatcher import JobDispatcher, provider_job_type
from app.jobs.errors import JobNotFoundError, JobValidationError
from app.jobs.ingestion import EventIngestor, IngestResult
from app.jobs.models import JobRecord
from app.providers.contracts import JobProvider, ProviderError, ProviderRequest
from app.storage.jobs_repo import JobPage, JobQuery, JobsRepository
from app.utils.ids import is_placeholder_handle, slugify_label, unique_model_name

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS_FILTER = ["start", "output", "logs", "completed"]


def webhook_url(settings: Settings) -> str | None:
  if not settings.public_base_url:
    return None
  return f"{settings.public_base_url}/webhooks/replicate"


def _attach_webhook(body: dict[str, Any], settings: Settings) -> dict[str, Any]:
  url = webhook_url(settings)
  if url:
    body["webhook"] = url
    body["webhook_events_filter"] = list(WEBHOOK_EVENTS_FILTER)
  return body


def build_training_request(request: StartTrainingRequest, settings: Settings) -> tuple[str, dict[str, Any], ProviderRequest]:
  """Return (model name, stored payload, provider request) for a training run."""
  base_name = slugify_label(request.model_name or request.owner_name or request.owner_id, fallback="model")
  model_name = unique_model_name(base_name)
  trigger_word = request.trigger_word or base_name
  config = request.training_config
  training_input = {
    "input_images": request.dataset_url,
    "steps": config.steps,
    "lora_rank": config.lora_rank,
    "batch_size": config.batch_size,
    "learning_rate": config.learning_rate,
    "trigger_word": trigger_word,
  }

  body: dict[str, Any] = {"input": training_input}
  destination_model = None
  if settings.replicate_username:
    body["destination"] = f"{settings.replicate_username}/{model_name}"
    destination_model = {
      "owner": settings.replicate_username,
      "name": model_name,
      "visibility": "private",
      "hardware": "gpu-t4",
      "description": f"Fine-tuned Flux model for {request.owner_name or request.owner_id} (trigger: {trigger_word})",
    }
  else:
    logger.warning("STORYBOOK_REPLICATE_USERNAME is not set; training %s will not be saved to a destination model", model_name)
  _attach_webhook(body, settings)

  path = f"/models/{settings.trainer_owner}/{settings.trainer_project}/versions/{settings.trainer_version}/trainings"
  payload = {
    "model_name": model_name,
    "dataset_url": request.dataset_url,
    "training_config": {**config.model_dump(), "trigger_word": trigger_word},
    "destination": body.get("destination"),
  }
  return model_name, payload, ProviderRequest(job_type="training", body=body, path=path, destination_model=destination_model)


def _version_id(model_version: str) -> str:
  # "<owner>/<model>:<version>" -> "<version>"
  return model_version.rsplit(":", 1)[-1].strip()


def build_storybook_request(request: StartStorybookRequest, settings: Settings) -> tuple[dict[str, Any], ProviderRequest]:
  """Return (stored payload, provider request) for one storybook illustration run."""
  version = _version_id(request.model_version)
  if not version:
    raise JobValidationError("model_version does not contain a version id.")

  prompts = [page.prompt if not request.trigger_word else f"{request.trigger_word} {page.prompt}" for page in request.pages]
  prediction_input: dict[str, Any] = {
    "prompts": prompts,
    "num_outputs": request.num_outputs,
  }
  references = [page.reference_image_url for page in request.pages]
  if any(references):
    prediction_input["reference_images"] = references

  body = _attach_webhook({"version": version, "input": prediction_input}, settings)
  payload = {
    "model_version": request.model_version,
    "title": request.title,
    "page_count": len(request.pages),
    "num_outputs": request.num_outputs,
    "pages": [page.model_dump() for page in request.pages],
  }
  return payload, ProviderRequest(job_type="prediction", body=body, path="/predictions")


class JobService:
  """Process-scoped bundle of the job pipeline components."""

  def __init__(self, settings: Settings, repo: JobsRepository, provider: JobProvider, broadcaster: JobBroadcaster | None = None) -> None:
    self.settings = settings
    self.repo = repo
    self.provider = provider
    self.broadcaster = broadcaster or JobBroadcaster(repo, subscriber_timeout_seconds=settings.subscriber_timeout_seconds)
    self.dispatcher = JobDispatcher(
      repo,
      provider,
      self.broadcaster,
      max_attempts=settings.job_max_attempts,
      backoff_initial_ms=settings.dispatch_backoff_initial_ms,
      backoff_max_ms=settings.dispatch_backoff_max_ms,
    )
    self.ingestor = EventIngestor(repo, self.broadcaster, max_tracked_logs=settings.max_tracked_logs)

  async def start_training(self, request: StartTrainingRequest) -> JobRecord:
    model_name, payload, provider_request = build_training_request(request, self.settings)
    return await self.dispatcher.start_job("training", request.owner_id, payload, provider_request, label=model_name)

  async def start_storybook(self, request: StartStorybookRequest) -> JobRecord:
    payload, provider_request = build_storybook_request(request, self.settings)
    label = request.title or f"book-{request.book_id}"
    return await self.dispatcher.start_job("storybook", request.owner_id, payload, provider_request, book_id=request.book_id, label=label)

  async def cancel(self, job_id: str) -> JobRecord:
    return await self.dispatcher.cancel_job(job_id)

  async def redispatch(self, job_id: str) -> JobRecord:
    return await self.dispatcher.redispatch(job_id)

  async def get_job(self, job_id: str) -> JobRecord:
    record = await self.repo.get_job(job_id)
    if record is None:
      raise JobNotFoundError(f"Job {job_id} not found")
    return record

  async def get_status(self, job_id: str) -> JobRecord:
    """Polling fallback: consult the provider for dispatched, non-terminal jobs."""
    record = await self.get_job(job_id)
    if record.is_terminal or is_placeholder_handle(record.external_job_id):
      return record
    result = await self._poll(record, resync=False)
    return result.record or record

  async def resync(self, job_id: str) -> JobRecord:
    """Re-check the provider even for terminal jobs and correct the terminal status."""
    record = await self.get_job(job_id)
    if is_placeholder_handle(record.external_job_id):
      return record
    result = await self._poll(record, resync=True)
    return result.record or record

  async def _poll(self, record: JobRecord, *, resync: bool) -> IngestResult:
    try:
      event = await self.provider.fetch(provider_job_type(record), record.external_job_id)
    except ProviderError as exc:
      logger.warning("Status poll for job %s failed: %s", record.job_id, exc)
      return IngestResult(outcome="unchanged", record=record)
    return await self.ingestor.ingest(event, resync=resync)

  async def list_jobs(self, query: JobQuery) -> tuple[JobPage, dict[str, Any]]:
    page = await self.repo.list_jobs(query)
    total_pages = math.ceil(page.total / query.limit) if page.total else 0
    pagination = {
      "page": query.page,
      "limit": query.limit,
      "total": page.total,
      "total_pages": total_pages,
      "has_next": query.page < total_pages,
      "has_prev": query.page > 1,
    }
    return page, pagination

  async def get_logs(self, job_id: str, *, limit: int = 0, order: str = "desc") -> dict[str, Any]:
    record = await self.get_job(job_id)
    logs = list(record.logs)
    if limit > 0 and len(logs) > limit:
      logs = logs[-limit:]
    if order == "desc":
      logs.reverse()
    return {"job_id": record.job_id, "count": len(record.logs), "logs_returned": len(logs), "order": order, "limit": limit or None, "logs": logs}

  async def list_successful_trainings(self, owner_id: str) -> list[JobRecord]:
    if not owner_id.strip():
      raise JobValidationError("owner_id is required.")
    return await self.repo.list_successful_trainings(owner_id.strip())

  async def aclose(self) -> None:
    close = getattr(self.provider, "aclose", None)
    if close is not None:
      await close()
