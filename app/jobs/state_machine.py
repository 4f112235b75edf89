"""Job status vocabulary, ordering and provider status mapping."""

from __future__ import annotations

from app.jobs.models import TERMINAL_STATUSES, JobStatus

# queued -> starting -> processing -> {succeeded | failed | canceled}
STATUS_RANK: dict[str, int] = {
  "queued": 0,
  "starting": 1,
  "processing": 2,
  "succeeded": 3,
  "failed": 3,
  "canceled": 3,
}

# Explicit provider -> local vocabulary. Anything not listed is rejected, never guessed.
PROVIDER_STATUS_MAP: dict[str, JobStatus] = {
  "starting": "starting",
  "processing": "processing",
  "succeeded": "succeeded",
  "successful": "succeeded",
  "failed": "failed",
  "canceled": "canceled",
  "cancelled": "canceled",
  "aborted": "canceled",
}

# Lifecycle event appended when a record enters a status. The provider
# acknowledging a job (`starting`) is reported as a `progress` event with its own
# message; same-status progress updates append no event at all, so every
# `progress` event marks entry into `starting`.
STATUS_EVENT_TYPE: dict[str, str] = {
  "starting": "progress",
  "processing": "started",
  "succeeded": "completed",
  "failed": "error",
  "canceled": "canceled",
}

STATUS_EVENT_MESSAGE: dict[str, str] = {
  "starting": "Provider acknowledged the job and is starting",
  "processing": "Provider started processing",
  "succeeded": "Job completed successfully",
  "failed": "Provider reported failure",
  "canceled": "Job canceled at provider",
}


def is_terminal(status: str) -> bool:
  return status in TERMINAL_STATUSES


def map_provider_status(raw_status: str | None) -> JobStatus | None:
  """Translate a provider status into the local vocabulary, or None when unknown."""
  if not isinstance(raw_status, str):
    return None
  return PROVIDER_STATUS_MAP.get(raw_status.strip().lower())


def is_forward_transition(current: str, target: str) -> bool:
  """True when moving from current to target advances along the state graph."""
  # Terminal statuses are sticky; terminal to terminal only happens through an explicit resync.
  if is_terminal(current):
    return False
  return STATUS_RANK[target] > STATUS_RANK[current]


def clamp_progress(value: object) -> float | None:
  """Clamp a raw progress value into [0, 100]; non-numeric input yields None."""
  if isinstance(value, bool) or not isinstance(value, int | float | str):
    return None
  try:
    numeric = float(value)
  except ValueError:
    return None
  if numeric != numeric:
    return None
  return max(0.0, min(100.0, numeric))
