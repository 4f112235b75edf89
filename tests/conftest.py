"""Shared fixtures and in-memory doubles for the job pipeline."""

from __future__ import annotations

import asyncio
import copy
import os
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

# Settings are read at import time; keep a developer .env out of the test run.
os.environ["STORYBOOK_ENV_FILE"] = str(Path(__file__).resolve().parent / "missing.env")
os.environ["STORYBOOK_ALLOWED_ORIGINS"] = "http://localhost"
os.environ.pop("STORYBOOK_REPLICATE_WEBHOOK_SECRET", None)

import pytest  # noqa: E402

from app.config import Settings, get_settings  # noqa: E402
from app.jobs.broadcaster import JobBroadcaster  # noqa: E402
from app.jobs.dispatcher import JobDispatcher  # noqa: E402
from app.jobs.ingestion import EventIngestor  # noqa: E402
from app.jobs.models import JobEvent, JobPatch, JobRecord  # noqa: E402
from app.providers.contracts import ProviderEvent, ProviderJobType, ProviderRequest  # noqa: E402
from app.services.jobs import JobService  # noqa: E402
from app.storage.jobs_repo import JobPage, JobQuery  # noqa: E402
from app.utils.timestamps import now_iso  # noqa: E402


class InMemoryJobsRepo:
  """Jobs repository double with the same compare-and-set contract as Postgres.

  Every read yields to the event loop so concurrent callers interleave the way
  they would against a real database.
  """

  def __init__(self) -> None:
    self._jobs: dict[str, JobRecord] = {}
    self.conflicts = 0
    self.writes = 0

  async def create_job(self, record: JobRecord) -> None:
    self._jobs[record.job_id] = copy.deepcopy(record)

  async def get_job(self, job_id: str) -> JobRecord | None:
    await asyncio.sleep(0)
    record = self._jobs.get(job_id)
    return copy.deepcopy(record) if record else None

  async def get_job_by_external_id(self, external_job_id: str) -> JobRecord | None:
    await asyncio.sleep(0)
    for record in self._jobs.values():
      if record.external_job_id == external_job_id:
        return copy.deepcopy(record)
    return None

  async def append_event(self, job_id: str, event: JobEvent) -> JobRecord | None:
    record = self._jobs.get(job_id)
    if record is None:
      return None
    updated = replace(record, events=[*record.events, event], version=record.version + 1, updated_at=now_iso())
    self._jobs[job_id] = updated
    return copy.deepcopy(updated)

  async def apply_transition(self, job_id: str, *, expected_version: int, patch: JobPatch, events: Sequence[JobEvent] = ()) -> JobRecord | None:
    await asyncio.sleep(0)
    record = self._jobs.get(job_id)
    if record is None or record.version != expected_version:
      self.conflicts += 1
      return None
    changes = {name: getattr(patch, name) for name in patch.__dataclass_fields__ if getattr(patch, name) is not None}
    updated = replace(record, **changes, events=[*record.events, *events], version=record.version + 1, updated_at=now_iso())
    self._jobs[job_id] = updated
    self.writes += 1
    return copy.deepcopy(updated)

  async def list_jobs(self, query: JobQuery) -> JobPage:
    def matches(record: JobRecord, *, with_status: bool) -> bool:
      if query.job_kind and record.job_kind != query.job_kind:
        return False
      if query.owner_id and record.owner_id != query.owner_id:
        return False
      if query.book_id and record.book_id != query.book_id:
        return False
      if with_status and query.status and record.status != query.status:
        return False
      return True

    selected = [record for record in self._jobs.values() if matches(record, with_status=True)]
    selected.sort(key=lambda record: getattr(record, query.sort_by), reverse=query.sort_order == "desc")
    breakdown: dict[str, int] = {}
    for record in self._jobs.values():
      if matches(record, with_status=False):
        breakdown[record.status] = breakdown.get(record.status, 0) + 1
    items = [copy.deepcopy(record) for record in selected[query.offset : query.offset + query.limit]]
    return JobPage(items=items, total=len(selected), status_counts=breakdown)

  async def list_successful_trainings(self, owner_id: str) -> list[JobRecord]:
    return [
      copy.deepcopy(record)
      for record in self._jobs.values()
      if record.owner_id == owner_id and record.job_kind == "training" and record.status == "succeeded" and (record.result or {}).get("version")
    ]

  def seed(self, record: JobRecord) -> None:
    self._jobs[record.job_id] = copy.deepcopy(record)

  def stored(self, job_id: str) -> JobRecord:
    return self._jobs[job_id]

  def records(self) -> list[JobRecord]:
    return list(self._jobs.values())


class FakeProvider:
  """Scriptable provider: queue results or exceptions per operation."""

  def __init__(self) -> None:
    self.submit_results: list[ProviderEvent | Exception] = []
    self.fetch_results: dict[str, ProviderEvent | Exception] = {}
    self.cancel_error: Exception | None = None
    self.submitted: list[ProviderRequest] = []
    self.fetched: list[tuple[ProviderJobType, str]] = []
    self.canceled: list[tuple[ProviderJobType, str]] = []
    self._counter = 0

  async def submit(self, request: ProviderRequest) -> ProviderEvent:
    self.submitted.append(request)
    await asyncio.sleep(0)
    if self.submit_results:
      result = self.submit_results.pop(0)
      if isinstance(result, Exception):
        raise result
      return result
    self._counter += 1
    return ProviderEvent(id=f"r8-{self._counter:03d}", status="starting")

  async def fetch(self, job_type: ProviderJobType, external_job_id: str) -> ProviderEvent:
    self.fetched.append((job_type, external_job_id))
    result = self.fetch_results.get(external_job_id)
    if isinstance(result, Exception):
      raise result
    if result is None:
      return ProviderEvent(id=external_job_id, status="processing")
    return result

  async def cancel(self, job_type: ProviderJobType, external_job_id: str) -> ProviderEvent:
    self.canceled.append((job_type, external_job_id))
    await asyncio.sleep(0)
    if self.cancel_error is not None:
      raise self.cancel_error
    return ProviderEvent(id=external_job_id, status="canceled")


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def settings() -> Settings:
  return replace(get_settings(), dispatch_backoff_initial_ms=0, dispatch_backoff_max_ms=0, public_base_url="https://storybook.test", replicate_username="storyteam", job_max_attempts=2)


@pytest.fixture
def repo() -> InMemoryJobsRepo:
  return InMemoryJobsRepo()


@pytest.fixture
def provider() -> FakeProvider:
  return FakeProvider()


@pytest.fixture
def broadcaster(repo: InMemoryJobsRepo) -> JobBroadcaster:
  return JobBroadcaster(repo, subscriber_timeout_seconds=0.5)


@pytest.fixture
def dispatcher(repo: InMemoryJobsRepo, provider: FakeProvider, broadcaster: JobBroadcaster) -> JobDispatcher:
  return JobDispatcher(repo, provider, broadcaster, max_attempts=2, backoff_initial_ms=0, backoff_max_ms=0)


@pytest.fixture
def ingestor(repo: InMemoryJobsRepo, broadcaster: JobBroadcaster) -> EventIngestor:
  return EventIngestor(repo, broadcaster)


@pytest.fixture
def service(settings: Settings, repo: InMemoryJobsRepo, provider: FakeProvider, broadcaster: JobBroadcaster) -> JobService:
  return JobService(settings, repo, provider, broadcaster)


@pytest.fixture
def provider_request() -> ProviderRequest:
  return ProviderRequest(job_type="training", body={"input": {"input_images": "https://cdn.test/ds.zip"}}, path="/models/ostris/flux-dev-lora-trainer/versions/v1/trainings")


def _make_record(**overrides: object) -> JobRecord:
  now = now_iso()
  base = JobRecord(
    job_id="job-1",
    job_kind="training",
    owner_id="user-1",
    status="processing",
    external_job_id="r8-abc",
    created_at=now,
    updated_at=now,
    max_attempts=2,
    attempts=1,
    payload={"provider_request": {"job_type": "training", "path": "/x", "body": {}, "destination_model": None}},
    events=[JobEvent(event_type="created", message="Training job created", timestamp=now)],
  )
  return replace(base, **overrides)


@pytest.fixture
def record_factory():
  """Build a JobRecord with sensible defaults, overriding any field."""
  return _make_record
