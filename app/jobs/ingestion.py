"""Apply provider events (webhooks and polls) to job records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

import msgspec

from app.jobs.broadcaster import JobBroadcaster
from app.jobs.errors import JobConflictError, JobNotFoundError
from app.jobs.models import ERROR_PROVIDER_FAILED, JobEvent, JobPatch, JobRecord, JobStatus
from app.jobs.progress import MAX_TRACKED_LOGS, parse_log_progress, split_log_lines
from app.jobs.state_machine import STATUS_EVENT_MESSAGE, STATUS_EVENT_TYPE, STATUS_RANK, clamp_progress, is_forward_transition, is_terminal, map_provider_status
from app.jobs.transitions import Transition, apply_with_retry
from app.providers.contracts import ProviderEvent
from app.storage.jobs_repo import JobsRepository
from app.utils.timestamps import now_iso

logger = logging.getLogger(__name__)

IngestOutcome = Literal["applied", "unchanged", "stale", "terminal", "unknown_job", "unknown_status", "conflict"]


@dataclass(frozen=True)
class IngestResult:
  outcome: IngestOutcome
  record: JobRecord | None = None

  @property
  def applied(self) -> bool:
    return self.outcome == "applied"


def decode_provider_event(body: bytes) -> ProviderEvent:
  """Decode a raw webhook body; raises msgspec errors on malformed input."""
  return msgspec.json.decode(body, type=ProviderEvent)


def extract_result(job_kind: str, output: Any) -> dict[str, Any] | None:
  """Normalize provider output into the record's result shape."""
  if output is None:
    return None
  if job_kind == "training":
    if isinstance(output, dict):
      return {"version": output.get("version"), "weights": output.get("weights")}
    return {"version": None, "weights": str(output)}
  if isinstance(output, str):
    return {"assets": [output]}
  if isinstance(output, list):
    return {"assets": [item for item in output if isinstance(item, str)]}
  if isinstance(output, dict) and isinstance(output.get("assets"), list):
    return {"assets": list(output["assets"])}
  return {"assets": []}


def _error_message(error: Any) -> str:
  if error is None or error == "":
    return STATUS_EVENT_MESSAGE["failed"]
  if isinstance(error, str):
    return error
  if isinstance(error, dict):
    return str(error.get("detail") or error.get("message") or error)
  return str(error)


class EventIngestor:
  """Single entry point for every provider-originated status change.

  Webhooks and polls both land here. Terminal records are sticky unless the
  caller asks for a corrective resync; status only moves forward along the
  state graph; progress never decreases. Every write goes through the store's
  conditional update, and each successful write is published.
  """

  def __init__(self, repo: JobsRepository, broadcaster: JobBroadcaster, *, max_tracked_logs: int = MAX_TRACKED_LOGS) -> None:
    self._repo = repo
    self._broadcaster = broadcaster
    self._max_tracked_logs = max_tracked_logs

  async def ingest(self, event: ProviderEvent, *, resync: bool = False) -> IngestResult:
    # Normalize the provider status before touching storage.
    target = map_provider_status(event.status)
    if target is None:
      logger.warning("Discarding provider event %s with unrecognized status %r", event.id, event.status)
      return IngestResult(outcome="unknown_status")

    # Resolve the handle; events for handles we never stored are dropped.
    record = await self._repo.get_job_by_external_id(event.id)
    if record is None:
      logger.info("Discarding provider event for unknown handle %s", event.id)
      return IngestResult(outcome="unknown_job")

    try:
      outcome = await apply_with_retry(self._repo, record.job_id, lambda current: self._plan(current, event, target, resync=resync))
    except JobNotFoundError:
      logger.warning("Job %s disappeared while ingesting event %s", record.job_id, event.id)
      return IngestResult(outcome="unknown_job")
    except JobConflictError:
      logger.warning("Gave up applying provider event %s to job %s after repeated conflicts", event.id, record.job_id)
      return IngestResult(outcome="conflict", record=record)

    # Nothing written means nothing to publish.
    if not outcome.applied:
      skipped = _skip_reason(outcome.record, target, resync=resync)
      logger.debug("Provider event %s for job %s not applied: %s", event.id, record.job_id, skipped)
      return IngestResult(outcome=skipped, record=outcome.record)

    logger.info("Job %s is now %s (progress %.1f)", outcome.record.job_id, outcome.record.status, outcome.record.progress)
    await self._broadcaster.publish(outcome.record)
    return IngestResult(outcome="applied", record=outcome.record)

  def _plan(self, record: JobRecord, event: ProviderEvent, target: JobStatus, *, resync: bool) -> Transition | None:
    # Terminal records only move through an explicit corrective resync.
    if record.is_terminal:
      if resync and is_terminal(target) and target != record.status:
        return self._status_change(record, event, target, corrective=True)
      return None

    if is_forward_transition(record.status, target):
      return self._status_change(record, event, target)

    # Late delivery of an earlier status.
    if STATUS_RANK[target] < STATUS_RANK[record.status]:
      return None

    # Same status: progress and logs only, no lifecycle event.
    progress = self._next_progress(record, event)
    logs = self._next_logs(record, event)
    patch = JobPatch(progress=progress, logs=logs)
    if patch.is_empty():
      return None
    return Transition(patch=patch)

  def _status_change(self, record: JobRecord, event: ProviderEvent, target: JobStatus, *, corrective: bool = False) -> Transition:
    now = now_iso()
    progress = 100.0 if target == "succeeded" else self._next_progress(record, event)
    started_at = None
    if target in {"processing", "succeeded"} and record.started_at is None:
      started_at = event.started_at or now
    completed_at = None
    if is_terminal(target) and record.completed_at is None:
      completed_at = event.completed_at or now

    result = extract_result(record.job_kind, event.output) if target == "succeeded" else None
    error = error_code = None
    if target == "failed":
      error = _error_message(event.error)
      error_code = ERROR_PROVIDER_FAILED

    metadata = {"provider_status": event.status, "payload": _raw_payload(event)}
    message = STATUS_EVENT_MESSAGE[target]
    if corrective:
      metadata["resync"] = True
      metadata["previous_status"] = record.status
      message = f"Status corrected from {record.status} to {target} on re-check"
    elif target == "failed" and error:
      message = f"{message}: {error}"

    patch = JobPatch(
      status=target,
      progress=progress,
      logs=self._next_logs(record, event),
      result=result,
      error=error,
      error_code=error_code,
      started_at=started_at,
      completed_at=completed_at,
    )
    return Transition(patch=patch, events=[JobEvent(event_type=STATUS_EVENT_TYPE[target], message=message, timestamp=now, metadata=metadata)])

  def _next_progress(self, record: JobRecord, event: ProviderEvent) -> float | None:
    candidate = clamp_progress(event.progress) if event.progress is not None else None
    if candidate is None:
      candidate = clamp_progress(parse_log_progress(event.logs))
    if candidate is None or candidate <= record.progress:
      return None
    return candidate

  def _next_logs(self, record: JobRecord, event: ProviderEvent) -> list[str] | None:
    if event.logs is None:
      return None
    lines = split_log_lines(event.logs, max_lines=self._max_tracked_logs)
    if lines == record.logs:
      return None
    return lines


def _raw_payload(event: ProviderEvent) -> dict[str, Any]:
  payload = msgspec.to_builtins(event)
  # Logs are tracked on the record itself.
  payload.pop("logs", None)
  return payload


def _skip_reason(record: JobRecord, target: JobStatus, *, resync: bool) -> IngestOutcome:
  if record.is_terminal:
    return "unchanged" if resync or target == record.status else "terminal"
  if STATUS_RANK[target] < STATUS_RANK[record.status]:
    return "stale"
  return "unchanged"
