"""Storage interfaces for provider jobs."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from app.jobs.models import JobEvent, JobPatch, JobRecord

JOB_SORT_FIELDS: tuple[str, ...] = ("created_at", "updated_at", "status", "attempts")


@dataclass(frozen=True)
class JobQuery:
  """Filters and ordering for listing jobs."""

  job_kind: str | None = None
  status: str | None = None
  owner_id: str | None = None
  book_id: str | None = None
  page: int = 1
  limit: int = 20
  sort_by: str = "created_at"
  sort_order: str = "desc"

  @property
  def offset(self) -> int:
    return (self.page - 1) * self.limit


@dataclass(frozen=True)
class JobPage:
  items: list[JobRecord]
  total: int
  status_counts: dict[str, int] = field(default_factory=dict)


class JobsRepository(Protocol):
  """Repository contract for job persistence.

  Every mutation bumps the record's ``version``. ``apply_transition`` is the
  compare-and-set primitive: it writes only when the stored version still
  matches ``expected_version`` and returns ``None`` otherwise.
  """

  async def create_job(self, record: JobRecord) -> None:
    """Persist an initial job record together with its seed events."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def get_job_by_external_id(self, external_job_id: str) -> JobRecord | None:
    """Fetch a job by provider handle."""

  async def append_event(self, job_id: str, event: JobEvent) -> JobRecord | None:
    """Append one audit event unconditionally."""

  async def apply_transition(self, job_id: str, *, expected_version: int, patch: JobPatch, events: Sequence[JobEvent] = ()) -> JobRecord | None:
    """Apply a patch and append events if the stored version equals expected_version."""

  async def list_jobs(self, query: JobQuery) -> JobPage:
    """Return one page of jobs plus per-status counts for the same filters."""

  async def list_successful_trainings(self, owner_id: str) -> list[JobRecord]:
    """Return succeeded training jobs that produced a model version."""
