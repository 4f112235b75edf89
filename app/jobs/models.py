"""Domain models for long-running provider jobs (model training and storybook runs)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

JobStatus = Literal["queued", "starting", "processing", "succeeded", "failed", "canceled"]
JobKind = Literal["training", "storybook"]
JobEventType = Literal["created", "dispatched", "started", "progress", "completed", "error", "canceled"]

JOB_KINDS: tuple[str, ...] = ("training", "storybook")
# Records in these statuses never change again outside a corrective resync.
TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})

ERROR_DISPATCH_ATTEMPTS_EXHAUSTED = "DISPATCH_ATTEMPTS_EXHAUSTED"
ERROR_PROVIDER_FAILED = "PROVIDER_FAILED"


@dataclass(frozen=True)
class JobEvent:
  """One immutable entry of a job's audit trail."""

  event_type: JobEventType
  message: str
  timestamp: str
  metadata: dict[str, Any] | None = None


@dataclass
class JobRecord:
  """Durable state of one external computation."""

  job_id: str
  job_kind: JobKind
  owner_id: str
  status: JobStatus
  external_job_id: str
  created_at: str
  updated_at: str
  book_id: str | None = None
  label: str | None = None
  progress: float = 0.0
  attempts: int = 0
  max_attempts: int = 1
  payload: dict[str, Any] = field(default_factory=dict)
  result: dict[str, Any] | None = None
  error: str | None = None
  error_code: str | None = None
  logs: list[str] = field(default_factory=list)
  events: list[JobEvent] = field(default_factory=list)
  started_at: str | None = None
  completed_at: str | None = None
  # Bumped on every write; the store updates only when it still matches.
  version: int = 0

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class JobPatch:
  """Partial update applied atomically by the store; None means "leave unchanged"."""

  status: JobStatus | None = None
  progress: float | None = None
  attempts: int | None = None
  external_job_id: str | None = None
  result: dict[str, Any] | None = None
  error: str | None = None
  error_code: str | None = None
  logs: list[str] | None = None
  started_at: str | None = None
  completed_at: str | None = None

  def is_empty(self) -> bool:
    return all(getattr(self, name) is None for name in self.__dataclass_fields__)
