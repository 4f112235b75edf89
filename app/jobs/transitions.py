"""Read-compute-write loop over the store's conditional update."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from app.jobs.errors import JobConflictError, JobNotFoundError
from app.jobs.models import JobEvent, JobPatch, JobRecord
from app.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_BUDGET = 5


@dataclass(frozen=True)
class Transition:
  """A patch plus the audit events that must land with it."""

  patch: JobPatch
  events: Sequence[JobEvent] = ()


@dataclass(frozen=True)
class TransitionOutcome:
  record: JobRecord
  applied: bool


ComputeTransition = Callable[[JobRecord], Transition | None | Awaitable[Transition | None]]


async def apply_with_retry(repo: JobsRepository, job_id: str, compute: ComputeTransition, *, conflict_budget: int = DEFAULT_CONFLICT_BUDGET) -> TransitionOutcome:
  """Re-read, recompute and conditionally write until the version check passes.

  ``compute`` returns ``None`` when the current record needs no change; the
  loop then returns the record untouched. A missing job raises
  ``JobNotFoundError``; running out of budget raises ``JobConflictError``.
  """
  for attempt in range(1, conflict_budget + 1):
    # Read the current record; its version guards the write below.
    record = await repo.get_job(job_id)
    if record is None:
      raise JobNotFoundError(f"Job {job_id} not found")

    # Decide against this exact snapshot; None means nothing to change.
    transition = compute(record)
    if inspect.isawaitable(transition):
      transition = await transition
    if transition is None:
      return TransitionOutcome(record=record, applied=False)

    # Conditional write: lands only if nobody bumped the version meanwhile.
    updated = await repo.apply_transition(job_id, expected_version=record.version, patch=transition.patch, events=transition.events)
    if updated is not None:
      return TransitionOutcome(record=updated, applied=True)

    logger.debug("Version conflict on job %s (attempt %d/%d); recomputing", job_id, attempt, conflict_budget)

  raise JobConflictError(f"Job {job_id} kept changing underneath the update")
