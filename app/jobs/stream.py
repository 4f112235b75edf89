"""Server-Sent Events framing of broadcaster snapshots."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

from app.jobs.broadcaster import JobBroadcaster
from app.jobs.models import JobRecord
from app.jobs.serialization import encode_record

logger = logging.getLogger(__name__)

STREAM_START_FRAME = ": stream-start\n\n"
HEARTBEAT_FRAME = ": ping\n\n"
DEFAULT_RETRY_MS = 4000


@dataclass(frozen=True)
class StreamFilter:
  """Optional scoping of a stream; unset fields match everything."""

  job_kind: str | None = None
  book_id: str | None = None
  owner_id: str | None = None
  job_id: str | None = None

  def matches(self, record: JobRecord) -> bool:
    if self.job_kind and record.job_kind != self.job_kind:
      return False
    if self.book_id and record.book_id != self.book_id:
      return False
    if self.owner_id and record.owner_id != self.owner_id:
      return False
    if self.job_id and record.job_id != self.job_id:
      return False
    return True


def format_data_frame(record: JobRecord) -> str:
  return f"data: {encode_record(record).decode()}\n\n"


class JobEventStream:
  """One live connection: subscribe on open, relay snapshots, ping, unsubscribe on exit."""

  def __init__(
    self,
    broadcaster: JobBroadcaster,
    *,
    stream_filter: StreamFilter | None = None,
    heartbeat_seconds: float = 25.0,
    queue_size: int = 256,
    retry_ms: int = DEFAULT_RETRY_MS,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
  ) -> None:
    self._broadcaster = broadcaster
    self._filter = stream_filter or StreamFilter()
    self._heartbeat_seconds = heartbeat_seconds
    self._retry_ms = retry_ms
    self._is_disconnected = is_disconnected
    self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
    self._closed = False
    self.dropped_frames = 0

  def _enqueue(self, record: JobRecord) -> None:
    if self._closed:
      return
    frame = format_data_frame(record)
    if self._queue.full():
      # Slow client: keep the newest snapshots.
      self._queue.get_nowait()
      self.dropped_frames += 1
      logger.warning("Stream queue full; dropped oldest frame (%d dropped so far)", self.dropped_frames)
    self._queue.put_nowait(frame)

  async def frames(self) -> AsyncIterator[str]:
    unsubscribe = self._broadcaster.subscribe(self._enqueue, job_filter=self._filter.matches)
    logger.info("Live stream opened (filter=%s)", self._filter)
    try:
      yield STREAM_START_FRAME
      yield f"retry: {self._retry_ms}\n\n"
      while True:
        try:
          frame = await asyncio.wait_for(self._queue.get(), timeout=self._heartbeat_seconds)
        except TimeoutError:
          if self._is_disconnected is not None and await self._is_disconnected():
            break
          yield HEARTBEAT_FRAME
          continue
        yield frame
    finally:
      self._closed = True
      unsubscribe()
      logger.info("Live stream closed (filter=%s)", self._filter)
