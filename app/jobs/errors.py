"""Domain errors raised by the job orchestration layer."""

from __future__ import annotations


class JobError(Exception):
  """Base class for job command failures surfaced to callers."""

  status_code = 400


class JobValidationError(JobError):
  """Raised when a start command is rejected before any record is created."""

  status_code = 400


class JobNotFoundError(JobError):
  """Raised when a job id does not resolve to a record."""

  status_code = 404


class JobNotCancelableError(JobError):
  """Raised when cancellation is not permitted for the record's current state."""

  status_code = 409


class JobConflictError(JobError):
  """Raised when a command races with another writer and cannot be applied."""

  status_code = 409
