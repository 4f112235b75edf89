"""Contracts for the external asynchronous compute provider."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import msgspec

ProviderJobType = Literal["training", "prediction"]


class ProviderEvent(msgspec.Struct, kw_only=True):
  """Provider-shaped job snapshot delivered by webhook or returned by a poll."""

  id: str
  status: str
  progress: float | None = None
  logs: str | None = None
  output: Any = None
  error: Any = None
  metrics: dict[str, Any] | None = None
  created_at: str | None = None
  started_at: str | None = None
  completed_at: str | None = None
  version: str | None = None
  model: str | None = None


@dataclass(frozen=True)
class ProviderRequest:
  """A fully prepared create call: which endpoint to hit and with what body."""

  job_type: ProviderJobType
  body: dict[str, Any]
  path: str
  destination_model: dict[str, Any] | None = field(default=None)


class ProviderError(Exception):
  """Raised when the provider rejects a request."""

  def __init__(self, message: str, *, status_code: int | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code


class TransientProviderError(ProviderError):
  """Raised for network failures, timeouts, throttling and 5xx responses."""


class JobProvider(Protocol):
  """Operations the orchestration layer needs from the provider."""

  async def submit(self, request: ProviderRequest) -> ProviderEvent:
    """Create the remote job and return its initial snapshot (carrying the handle)."""

  async def fetch(self, job_type: ProviderJobType, external_job_id: str) -> ProviderEvent:
    """Return the current provider snapshot for a remote job."""

  async def cancel(self, job_type: ProviderJobType, external_job_id: str) -> ProviderEvent:
    """Ask the provider to cancel a remote job."""
