from __future__ import annotations

import asyncio

import pytest

from app.jobs.errors import JobConflictError, JobNotCancelableError, JobNotFoundError, JobValidationError
from app.jobs.models import ERROR_DISPATCH_ATTEMPTS_EXHAUSTED
from app.providers.contracts import ProviderError, ProviderEvent, TransientProviderError
from app.utils.ids import create_placeholder_handle, is_placeholder_handle


@pytest.mark.anyio
async def test_start_job_dispatches_and_records_handle(dispatcher, provider, provider_request, broadcaster) -> None:
  published = []
  broadcaster.subscribe(published.append)

  record = await dispatcher.start_job("training", "user-1", {"model_name": "ava"}, provider_request, label="ava")

  assert record.status == "queued"
  assert record.external_job_id == "r8-001"
  assert record.attempts == 1
  assert [event.event_type for event in record.events] == ["created", "dispatched"]
  assert record.payload["provider_request"]["path"] == provider_request.path
  assert provider.submitted == [provider_request]
  assert [item.external_job_id for item in published][-1] == "r8-001"
  assert is_placeholder_handle(published[0].external_job_id)


@pytest.mark.anyio
async def test_transient_failures_exhaust_attempts(dispatcher, provider, provider_request, repo) -> None:
  provider.submit_results = [TransientProviderError("upstream 503", status_code=503), TransientProviderError("upstream 503", status_code=503)]

  record = await dispatcher.start_job("training", "user-1", {"model_name": "ava"}, provider_request)

  assert record.status == "failed"
  assert record.attempts == 2
  assert record.error_code == ERROR_DISPATCH_ATTEMPTS_EXHAUSTED
  assert record.completed_at is not None
  assert is_placeholder_handle(record.external_job_id)
  errors = [event for event in record.events if event.event_type == "error"]
  assert [event.metadata["attempt"] for event in errors] == [1, 2]
  assert len(provider.submitted) == 2


@pytest.mark.anyio
async def test_transient_failure_then_success(dispatcher, provider, provider_request) -> None:
  provider.submit_results = [TransientProviderError("timeout"), ProviderEvent(id="r8-late", status="starting")]

  record = await dispatcher.start_job("training", "user-1", {"model_name": "ava"}, provider_request)

  assert record.status == "queued"
  assert record.external_job_id == "r8-late"
  assert record.attempts == 2
  assert [event.event_type for event in record.events] == ["created", "error", "dispatched"]


@pytest.mark.anyio
async def test_non_transient_failure_stays_queued_for_redispatch(dispatcher, provider, provider_request) -> None:
  provider.submit_results = [ProviderError("invalid version", status_code=422)]

  record = await dispatcher.start_job("training", "user-1", {"model_name": "ava"}, provider_request)

  assert record.status == "queued"
  assert record.attempts == 1
  assert record.events[-1].metadata["transient"] is False
  assert record.events[-1].metadata["status_code"] == 422

  redispatched = await dispatcher.redispatch(record.job_id)
  assert redispatched.external_job_id == "r8-001"
  assert redispatched.attempts == 2


@pytest.mark.anyio
async def test_empty_provider_handle_counts_as_failure(dispatcher, provider, provider_request) -> None:
  provider.submit_results = [ProviderEvent(id="", status="starting")]

  record = await dispatcher.start_job("training", "user-1", {"model_name": "ava"}, provider_request)

  assert is_placeholder_handle(record.external_job_id)
  assert record.events[-1].event_type == "error"


@pytest.mark.anyio
async def test_start_job_validation(dispatcher, provider_request) -> None:
  with pytest.raises(JobValidationError):
    await dispatcher.start_job("video", "user-1", {"x": 1}, provider_request)
  with pytest.raises(JobValidationError):
    await dispatcher.start_job("training", "  ", {"x": 1}, provider_request)
  with pytest.raises(JobValidationError):
    await dispatcher.start_job("training", "user-1", {}, provider_request)
  with pytest.raises(JobValidationError):
    await dispatcher.start_job("storybook", "user-1", {"x": 1}, provider_request)


@pytest.mark.anyio
async def test_redispatch_rules(dispatcher, repo, record_factory) -> None:
  with pytest.raises(JobNotFoundError):
    await dispatcher.redispatch("missing")

  await repo.create_job(record_factory(job_id="dispatched", status="queued"))
  with pytest.raises(JobConflictError):
    await dispatcher.redispatch("dispatched")

  await repo.create_job(record_factory(job_id="failed", status="failed", external_job_id=create_placeholder_handle("x"), attempts=2))
  with pytest.raises(JobConflictError):
    await dispatcher.redispatch("failed")


@pytest.mark.anyio
async def test_cancel_marks_record_canceled(dispatcher, provider, repo, record_factory) -> None:
  await repo.create_job(record_factory())

  record = await dispatcher.cancel_job("job-1")

  assert record.status == "canceled"
  assert record.completed_at is not None
  assert record.events[-1].event_type == "canceled"
  assert provider.canceled == [("training", "r8-abc")]


@pytest.mark.anyio
async def test_cancel_rejects_terminal_and_undispatched(dispatcher, provider, repo, record_factory) -> None:
  await repo.create_job(record_factory(job_id="done", status="succeeded"))
  await repo.create_job(record_factory(job_id="waiting", status="queued", external_job_id=create_placeholder_handle("w")))

  with pytest.raises(JobNotCancelableError):
    await dispatcher.cancel_job("done")
  with pytest.raises(JobNotCancelableError):
    await dispatcher.cancel_job("waiting")
  with pytest.raises(JobNotFoundError):
    await dispatcher.cancel_job("missing")
  assert provider.canceled == []


@pytest.mark.anyio
async def test_provider_cancel_failure_leaves_record_untouched(dispatcher, provider, repo, record_factory) -> None:
  await repo.create_job(record_factory())
  provider.cancel_error = ProviderError("not found", status_code=404)

  with pytest.raises(ProviderError):
    await dispatcher.cancel_job("job-1")

  stored = repo.stored("job-1")
  assert stored.status == "processing"
  assert stored.version == 0


@pytest.mark.anyio
async def test_concurrent_cancels_apply_once(dispatcher, repo, record_factory) -> None:
  await repo.create_job(record_factory())

  results = await asyncio.gather(dispatcher.cancel_job("job-1"), dispatcher.cancel_job("job-1"), return_exceptions=True)

  canceled = [result for result in results if not isinstance(result, Exception)]
  rejected = [result for result in results if isinstance(result, JobNotCancelableError)]
  assert len(canceled) == 1
  assert len(rejected) == 1
  stored = repo.stored("job-1")
  assert stored.status == "canceled"
  assert [event.event_type for event in stored.events].count("canceled") == 1


@pytest.mark.anyio
async def test_cancel_races_with_completion_webhook(dispatcher, ingestor, repo, record_factory) -> None:
  await repo.create_job(record_factory())

  results = await asyncio.gather(
    dispatcher.cancel_job("job-1"),
    ingestor.ingest(ProviderEvent(id="r8-abc", status="succeeded", output={"version": "v1"})),
    return_exceptions=True,
  )

  stored = repo.stored("job-1")
  assert stored.status in {"canceled", "succeeded"}
  terminal_events = [event for event in stored.events if event.event_type in {"canceled", "completed"}]
  assert len(terminal_events) == 1
  if stored.status == "succeeded":
    assert isinstance(results[0], JobNotCancelableError)


@pytest.mark.anyio
async def test_unexpected_submit_error_is_recorded_then_raised(dispatcher, provider, provider_request, repo) -> None:
  provider.submit_results = [RuntimeError("socket closed"), RuntimeError("socket closed")]

  with pytest.raises(RuntimeError):
    await dispatcher.start_job("training", "user-1", {"model_name": "ava"}, provider_request)

  [record] = repo.records()
  assert record.status == "queued"
  assert record.attempts == 1
  assert record.events[-1].event_type == "error"
  assert "RuntimeError: socket closed" in record.events[-1].message

  with pytest.raises(RuntimeError):
    await dispatcher.redispatch(record.job_id)

  stored = repo.stored(record.job_id)
  assert stored.status == "failed"
  assert stored.attempts == 2
  assert stored.error_code == ERROR_DISPATCH_ATTEMPTS_EXHAUSTED
  assert stored.completed_at is not None
  assert [event.event_type for event in stored.events] == ["created", "error", "error"]


@pytest.mark.anyio
async def test_spent_record_without_outcome_is_closed_as_failed(dispatcher, provider, repo, record_factory, broadcaster) -> None:
  # Last attempt claimed, then the process died before recording anything.
  await repo.create_job(record_factory(status="queued", external_job_id=create_placeholder_handle("x"), attempts=2, max_attempts=2))
  published = []
  broadcaster.subscribe(published.append)

  record = await dispatcher.redispatch("job-1")

  assert record.status == "failed"
  assert record.error_code == ERROR_DISPATCH_ATTEMPTS_EXHAUSTED
  assert record.completed_at is not None
  assert record.events[-1].event_type == "error"
  assert provider.submitted == []
  assert [item.status for item in published] == ["failed"]

  with pytest.raises(JobConflictError):
    await dispatcher.redispatch("job-1")
