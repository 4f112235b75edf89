from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator

from app.jobs.models import JobKind, JobStatus


class TrainingConfig(BaseModel):
  """Optional overrides for the LoRA trainer input."""

  steps: int = Field(default=1000, ge=1, le=10000)
  lora_rank: int = Field(default=16, ge=1, le=128)
  batch_size: int = Field(default=1, ge=1, le=16)
  learning_rate: float = Field(default=0.0004, gt=0, le=1)
  model_config = ConfigDict(extra="forbid")


class StartTrainingRequest(BaseModel):
  """Start a fine-tuning run from an already uploaded dataset archive."""

  owner_id: StrictStr = Field(min_length=1, description="User the model is trained for.")
  dataset_url: StrictStr = Field(min_length=1, description="Public URL of the zipped reference images.", examples=["https://cdn.example.com/training/ava.zip"])
  model_name: StrictStr | None = Field(default=None, min_length=1, max_length=80, description="Base name for the destination model; defaults to the owner name.")
  owner_name: StrictStr | None = Field(default=None, min_length=1, description="Display name used in the model description.")
  trigger_word: StrictStr | None = Field(default=None, min_length=1, max_length=64)
  training_config: TrainingConfig = Field(default_factory=TrainingConfig)
  model_config = ConfigDict(extra="forbid", protected_namespaces=())

  @field_validator("dataset_url")
  @classmethod
  def _absolute_url(cls, value: str) -> str:
    if not value.startswith(("http://", "https://")):
      raise ValueError("dataset_url must be an absolute http(s) URL")
    return value


class StoryPage(BaseModel):
  """One page to illustrate."""

  prompt: StrictStr = Field(min_length=1, max_length=2000)
  reference_image_url: StrictStr | None = None
  model_config = ConfigDict(extra="forbid")


class StartStorybookRequest(BaseModel):
  """Start an illustration run for every page of a book."""

  owner_id: StrictStr = Field(min_length=1)
  book_id: StrictStr = Field(min_length=1)
  model_version: StrictStr = Field(min_length=1, description="Fine-tuned model version, either '<owner>/<model>:<version>' or a bare version id.")
  pages: list[StoryPage] = Field(min_length=1, max_length=60)
  num_outputs: int = Field(default=2, ge=1, le=4, description="Candidate images per page.")
  trigger_word: StrictStr | None = None
  title: StrictStr | None = Field(default=None, max_length=200)
  model_config = ConfigDict(extra="forbid", protected_namespaces=())


class JobEventModel(BaseModel):
  event_type: StrictStr
  message: StrictStr
  timestamp: StrictStr
  metadata: dict[str, Any] | None = None


class JobResponse(BaseModel):
  """Full snapshot of a job record."""

  job_id: StrictStr
  job_kind: JobKind
  owner_id: StrictStr
  book_id: StrictStr | None = None
  label: StrictStr | None = None
  status: JobStatus
  external_job_id: StrictStr
  progress: float
  attempts: int
  max_attempts: int
  payload: dict[str, Any] = Field(default_factory=dict)
  result: dict[str, Any] | None = None
  error: StrictStr | None = None
  error_code: StrictStr | None = None
  logs: list[str] = Field(default_factory=list)
  events: list[JobEventModel] = Field(default_factory=list)
  created_at: StrictStr
  updated_at: StrictStr
  started_at: StrictStr | None = None
  completed_at: StrictStr | None = None
  version: int
  is_terminal: bool
  is_dispatched: bool


class Pagination(BaseModel):
  page: int
  limit: int
  total: int
  total_pages: int
  has_next: bool
  has_prev: bool


class JobListResponse(BaseModel):
  items: list[JobResponse]
  pagination: Pagination
  status_counts: dict[str, int]


class JobLogsResponse(BaseModel):
  job_id: StrictStr
  count: int
  logs_returned: int
  order: Literal["asc", "desc"]
  limit: int | None
  logs: list[str]


class SuccessfulTraining(BaseModel):
  job_id: StrictStr
  label: StrictStr | None = None
  version: StrictStr
  weights: StrictStr | None = None
  completed_at: StrictStr | None = None


class SuccessfulTrainingsResponse(BaseModel):
  owner_id: StrictStr
  items: list[SuccessfulTraining]


class WebhookAck(BaseModel):
  status: Literal["ok"] = "ok"
