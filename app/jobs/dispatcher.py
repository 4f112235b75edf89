"""Create job records and submit them to the provider with bounded retries."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from app.jobs.backoff import sleep_backoff
from app.jobs.broadcaster import JobBroadcaster
from app.jobs.errors import JobConflictError, JobNotCancelableError, JobNotFoundError, JobValidationError
from app.jobs.models import ERROR_DISPATCH_ATTEMPTS_EXHAUSTED, JOB_KINDS, JobEvent, JobKind, JobPatch, JobRecord
from app.jobs.transitions import Transition, TransitionOutcome, apply_with_retry
from app.providers.contracts import JobProvider, ProviderError, ProviderEvent, ProviderJobType, ProviderRequest, TransientProviderError
from app.storage.jobs_repo import JobsRepository
from app.utils.ids import create_placeholder_handle, generate_job_id, is_placeholder_handle
from app.utils.timestamps import now_iso

logger = logging.getLogger(__name__)

PROVIDER_REQUEST_KEY = "provider_request"
_DEFAULT_JOB_TYPES: dict[str, ProviderJobType] = {"training": "training", "storybook": "prediction"}


def provider_job_type(record: JobRecord) -> ProviderJobType:
  """Which provider collection (trainings or predictions) holds this job."""
  stored = (record.payload.get(PROVIDER_REQUEST_KEY) or {}).get("job_type")
  if stored in {"training", "prediction"}:
    return stored
  return _DEFAULT_JOB_TYPES[record.job_kind]


def _stored_request(record: JobRecord) -> ProviderRequest:
  raw = record.payload.get(PROVIDER_REQUEST_KEY)
  if not isinstance(raw, dict):
    raise ProviderError(f"Job {record.job_id} has no prepared provider request")
  return ProviderRequest(job_type=raw["job_type"], body=dict(raw["body"]), path=raw["path"], destination_model=raw.get("destination_model"))


class JobDispatcher:
  """Own the queued phase of a job: creation, submission and cancellation.

  ``dispatch`` claims one attempt at a time through the store, so two callers
  racing on the same record cannot both submit past the attempt cap. Every
  failed attempt is recorded as an ``error`` event and the record is either
  left ``queued`` (retryable) or moved to ``failed`` once the cap is reached.
  Provider errors are absorbed into that state; anything else is recorded and
  then re-raised.
  """

  def __init__(
    self,
    repo: JobsRepository,
    provider: JobProvider,
    broadcaster: JobBroadcaster,
    *,
    max_attempts: int = 2,
    backoff_initial_ms: int = 500,
    backoff_max_ms: int = 8000,
  ) -> None:
    if max_attempts < 1:
      raise ValueError("max_attempts must be at least 1")
    self._repo = repo
    self._provider = provider
    self._broadcaster = broadcaster
    self._max_attempts = max_attempts
    self._backoff_initial_ms = backoff_initial_ms
    self._backoff_max_ms = backoff_max_ms

  async def start_job(
    self,
    job_kind: JobKind,
    owner_id: str,
    payload: dict[str, Any],
    provider_request: ProviderRequest,
    *,
    book_id: str | None = None,
    label: str | None = None,
  ) -> JobRecord:
    """Create a queued record and run the dispatch loop for it."""
    if job_kind not in JOB_KINDS:
      raise JobValidationError(f"Unsupported job kind: {job_kind}")
    if not isinstance(owner_id, str) or owner_id.strip() == "":
      raise JobValidationError("An owner reference is required to start a job.")
    if not payload:
      raise JobValidationError("A prepared payload is required to start a job.")
    if job_kind == "storybook" and not book_id:
      raise JobValidationError("Storybook jobs require a book reference.")

    now = now_iso()
    record = JobRecord(
      job_id=generate_job_id(),
      job_kind=job_kind,
      owner_id=owner_id.strip(),
      status="queued",
      external_job_id=create_placeholder_handle(label),
      created_at=now,
      updated_at=now,
      book_id=book_id,
      label=label,
      max_attempts=self._max_attempts,
      payload={**payload, PROVIDER_REQUEST_KEY: asdict(provider_request)},
      events=[JobEvent(event_type="created", message=f"{job_kind.capitalize()} job created", timestamp=now, metadata={"label": label, "book_id": book_id})],
    )
    # Persist and publish before any provider call so the UI sees the queued record.
    await self._repo.create_job(record)
    logger.info("Created %s job %s for owner %s", job_kind, record.job_id, record.owner_id)
    await self._broadcaster.publish(record)
    return await self.dispatch(record.job_id)

  async def dispatch(self, job_id: str) -> JobRecord:
    """Submit a queued record, retrying transient failures until the cap."""
    while True:
      # Claim the next attempt; a record already at the cap is closed out instead.
      claimed = await apply_with_retry(self._repo, job_id, self._claim_attempt)
      if not claimed.applied:
        logger.info("Job %s is not dispatchable (status=%s attempts=%d/%d)", job_id, claimed.record.status, claimed.record.attempts, claimed.record.max_attempts)
        return claimed.record
      if claimed.record.is_terminal:
        logger.warning("Job %s had no dispatch attempts left; marked failed", job_id)
        await self._broadcaster.publish(claimed.record)
        return claimed.record

      record = claimed.record
      attempt = record.attempts
      try:
        request = _stored_request(record)
        provider_event = await self._provider.submit(request)
        if not provider_event.id:
          raise ProviderError("Provider accepted the job without returning a handle")
      except ProviderError as exc:
        outcome = await self._record_failure(job_id, attempt, exc)
        # Rejections are not retried automatically; the record stays queued for redispatch.
        if outcome.record.is_terminal or not isinstance(exc, TransientProviderError):
          return outcome.record
        await sleep_backoff(attempt, initial_backoff_ms=self._backoff_initial_ms, max_backoff_ms=self._backoff_max_ms)
        continue
      except Exception as exc:
        # Unexpected failure: record it against the claimed attempt, then let it surface.
        await self._record_failure(job_id, attempt, exc)
        raise

      # Store the real handle; webhooks and polls resolve the record through it.
      outcome = await apply_with_retry(self._repo, job_id, lambda current: self._dispatched_transition(current, provider_event))
      if outcome.applied:
        logger.info("Job %s dispatched as %s on attempt %d", job_id, provider_event.id, attempt)
        await self._broadcaster.publish(outcome.record)
      return outcome.record

  async def redispatch(self, job_id: str) -> JobRecord:
    """Manually re-run dispatch for a record still waiting on the provider.

    A record whose attempts are already spent is moved to ``failed`` rather
    than submitted again.
    """
    record = await self._repo.get_job(job_id)
    if record is None:
      raise JobNotFoundError(f"Job {job_id} not found")
    if record.status != "queued" or not is_placeholder_handle(record.external_job_id):
      raise JobConflictError(f"Job {job_id} is not awaiting dispatch (status={record.status}).")
    return await self.dispatch(job_id)

  async def cancel_job(self, job_id: str) -> JobRecord:
    """Cancel at the provider, then mark the record canceled.

    Raises ``JobNotCancelableError`` for terminal or undispatched records and
    lets ``ProviderError`` propagate with the record untouched.
    """
    record = await self._repo.get_job(job_id)
    if record is None:
      raise JobNotFoundError(f"Job {job_id} not found")
    if record.is_terminal:
      raise JobNotCancelableError(f"Job {job_id} is already {record.status}.")
    if is_placeholder_handle(record.external_job_id):
      raise JobNotCancelableError(f"Job {job_id} has not been dispatched to the provider yet.")

    # Provider first; a refusal propagates and leaves the record untouched.
    provider_event = await self._provider.cancel(provider_job_type(record), record.external_job_id)

    outcome = await apply_with_retry(self._repo, job_id, lambda current: self._cancel_transition(current, provider_event))
    if not outcome.applied:
      raise JobNotCancelableError(f"Job {job_id} is already {outcome.record.status}.")
    logger.info("Job %s canceled", job_id)
    await self._broadcaster.publish(outcome.record)
    return outcome.record

  async def _record_failure(self, job_id: str, attempt: int, exc: Exception) -> TransitionOutcome:
    logger.warning("Dispatch attempt %d for job %s failed: %s", attempt, job_id, exc)
    outcome = await apply_with_retry(self._repo, job_id, lambda current: self._failure_transition(current, attempt, exc))
    await self._broadcaster.publish(outcome.record)
    return outcome

  def _claim_attempt(self, record: JobRecord) -> Transition | None:
    if record.status != "queued" or not is_placeholder_handle(record.external_job_id):
      return None
    if record.attempts >= record.max_attempts:
      # The last attempt never recorded an outcome (crash, cancellation, storage error).
      return _exhausted_transition(record, "last attempt ended without a recorded outcome")
    return Transition(patch=JobPatch(attempts=record.attempts + 1))

  def _failure_transition(self, record: JobRecord, attempt: int, exc: Exception) -> Transition | None:
    if record.is_terminal:
      return None
    reason = str(exc) if isinstance(exc, ProviderError) else f"{type(exc).__name__}: {exc}"
    metadata = {"attempt": attempt, "max_attempts": record.max_attempts, "transient": isinstance(exc, TransientProviderError), "status_code": getattr(exc, "status_code", None)}
    event = JobEvent(event_type="error", message=f"Dispatch attempt {attempt}/{record.max_attempts} failed: {reason}", timestamp=now_iso(), metadata=metadata)
    if record.attempts < record.max_attempts:
      return Transition(patch=JobPatch(), events=[event])
    return _exhausted_transition(record, reason, events=[event])

  def _dispatched_transition(self, record: JobRecord, provider_event: ProviderEvent) -> Transition | None:
    if record.is_terminal or not is_placeholder_handle(record.external_job_id):
      return None
    event = JobEvent(
      event_type="dispatched",
      message=f"Submitted to provider as {provider_event.id}",
      timestamp=now_iso(),
      metadata={"external_job_id": provider_event.id, "attempt": record.attempts, "provider_status": provider_event.status},
    )
    return Transition(patch=JobPatch(external_job_id=provider_event.id), events=[event])

  def _cancel_transition(self, record: JobRecord, provider_event: ProviderEvent) -> Transition | None:
    if record.is_terminal:
      return None
    now = now_iso()
    event = JobEvent(event_type="canceled", message="Job canceled by user", timestamp=now, metadata={"provider_status": provider_event.status})
    return Transition(patch=JobPatch(status="canceled", completed_at=now), events=[event])


def _exhausted_transition(record: JobRecord, reason: str, *, events: list[JobEvent] | None = None) -> Transition:
  now = now_iso()
  if not events:
    events = [JobEvent(event_type="error", message=f"Dispatch attempts exhausted: {reason}", timestamp=now, metadata={"attempt": record.attempts, "max_attempts": record.max_attempts})]
  patch = JobPatch(status="failed", error=f"Dispatch failed after {record.attempts} attempts: {reason}", error_code=ERROR_DISPATCH_ATTEMPTS_EXHAUSTED, completed_at=now)
  return Transition(patch=patch, events=events)
