"""In-process publish/subscribe hub for job record snapshots."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from app.jobs.models import JobRecord
from app.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

Subscriber = Callable[[JobRecord], None | Awaitable[None]]
JobFilter = Callable[[JobRecord], bool]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class _Subscription:
  callback: Subscriber
  job_filter: JobFilter | None


class JobBroadcaster:
  """Fan job snapshots out to every live subscriber in this process.

  One instance is built at startup and shared by reference. Publishing
  iterates a copy of the subscriber table, so subscribing or unsubscribing
  from inside a callback is safe. A callback that raises or times out is
  logged and skipped; the remaining subscribers still receive the snapshot.
  """

  def __init__(self, repo: JobsRepository | None = None, *, subscriber_timeout_seconds: float = 2.0) -> None:
    self._repo = repo
    self._subscriber_timeout_seconds = subscriber_timeout_seconds
    self._subscriptions: dict[int, _Subscription] = {}
    self._ids = itertools.count(1)

  @property
  def subscriber_count(self) -> int:
    return len(self._subscriptions)

  def subscribe(self, callback: Subscriber, *, job_filter: JobFilter | None = None) -> Unsubscribe:
    """Register a callback and return an idempotent unsubscribe handle."""
    token = next(self._ids)
    self._subscriptions[token] = _Subscription(callback=callback, job_filter=job_filter)
    logger.debug("Subscriber %d registered (%d active)", token, len(self._subscriptions))

    def unsubscribe() -> None:
      if self._subscriptions.pop(token, None) is not None:
        logger.debug("Subscriber %d removed (%d active)", token, len(self._subscriptions))

    return unsubscribe

  async def publish(self, record: JobRecord) -> int:
    """Deliver a snapshot to matching subscribers; return how many accepted it."""
    delivered = 0
    for token, subscription in list(self._subscriptions.items()):
      # Skip subscribers that left while an earlier callback was running.
      if token not in self._subscriptions:
        continue
      if await self._deliver(token, subscription, record):
        delivered += 1
    return delivered

  async def publish_job(self, job_id: str) -> JobRecord | None:
    """Fetch the current record and publish it."""
    if self._repo is None:
      raise RuntimeError("Broadcaster has no repository to fetch jobs from")
    record = await self._repo.get_job(job_id)
    if record is None:
      logger.warning("Cannot publish unknown job %s", job_id)
      return None
    await self.publish(record)
    return record

  async def _deliver(self, token: int, subscription: _Subscription, record: JobRecord) -> bool:
    try:
      if subscription.job_filter is not None and not subscription.job_filter(record):
        return False
      result = subscription.callback(record)
      if inspect.isawaitable(result):
        await asyncio.wait_for(result, timeout=self._subscriber_timeout_seconds)
    except TimeoutError:
      logger.warning("Subscriber %d timed out handling job %s", token, record.job_id)
      return False
    except Exception:  # noqa: BLE001
      logger.exception("Subscriber %d failed handling job %s", token, record.job_id)
      return False
    return True
