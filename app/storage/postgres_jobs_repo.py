"""Postgres-backed repository for provider jobs using SQLAlchemy."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import get_session_factory
from app.jobs.models import JobEvent, JobPatch, JobRecord
from app.schema.jobs import Job
from app.schema.jobs import JobEvent as JobEventRow
from app.storage.jobs_repo import JobPage, JobQuery, JobsRepository
from app.utils.timestamps import now_iso

logger = logging.getLogger(__name__)

# JobPatch field -> Job column.
_PATCH_COLUMNS: dict[str, str] = {
  "status": "status",
  "progress": "progress",
  "attempts": "attempts",
  "external_job_id": "external_job_id",
  "result": "result_json",
  "error": "error",
  "error_code": "error_code",
  "logs": "logs_json",
  "started_at": "started_at",
  "completed_at": "completed_at",
}

_SORT_COLUMNS = {
  "created_at": Job.created_at,
  "updated_at": Job.updated_at,
  "status": Job.status,
  "attempts": Job.attempts,
}


class PostgresJobsRepository(JobsRepository):
  """Persist jobs and their audit events to Postgres.

  Writes that depend on a prior read go through ``apply_transition``, which is
  a single ``UPDATE ... WHERE version = :expected RETURNING`` so concurrent
  writers cannot both win.
  """

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_job(self, record: JobRecord) -> None:
    async with self._session_factory() as session:
      session.add(
        Job(
          job_id=record.job_id,
          job_kind=record.job_kind,
          owner_id=record.owner_id,
          book_id=record.book_id,
          label=record.label,
          status=record.status,
          external_job_id=record.external_job_id,
          progress=record.progress,
          attempts=record.attempts,
          max_attempts=record.max_attempts,
          payload_json=record.payload,
          result_json=record.result,
          error=record.error,
          error_code=record.error_code,
          logs_json=list(record.logs),
          created_at=record.created_at,
          updated_at=record.updated_at,
          started_at=record.started_at,
          completed_at=record.completed_at,
          version=record.version,
        )
      )
      # Flush the parent row before its events so the foreign key resolves.
      await session.flush()
      self._add_events(session, record.job_id, record.events)
      await session.commit()

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      if row is None:
        return None
      return await self._to_record(session, row)

  async def get_job_by_external_id(self, external_job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = select(Job).where(Job.external_job_id == external_job_id).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return await self._to_record(session, row)

  async def append_event(self, job_id: str, event: JobEvent) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = update(Job).where(Job.job_id == job_id).values(version=Job.version + 1, updated_at=now_iso()).returning(Job).execution_options(synchronize_session=False)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        await session.rollback()
        return None
      self._add_events(session, job_id, [event])
      await session.commit()
      return await self._to_record(session, row)

  async def apply_transition(self, job_id: str, *, expected_version: int, patch: JobPatch, events: Sequence[JobEvent] = ()) -> JobRecord | None:
    values: dict[str, Any] = {"version": Job.version + 1, "updated_at": now_iso()}
    for field_name, column in _PATCH_COLUMNS.items():
      value = getattr(patch, field_name)
      if value is not None:
        values[column] = value

    async with self._session_factory() as session:
      stmt = update(Job).where(Job.job_id == job_id, Job.version == expected_version).values(**values).returning(Job).execution_options(synchronize_session=False)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        await session.rollback()
        logger.debug("Conditional update missed for job %s at version %s", job_id, expected_version)
        return None
      self._add_events(session, job_id, events)
      await session.commit()
      return await self._to_record(session, row)

  async def list_jobs(self, query: JobQuery) -> JobPage:
    filters = []
    if query.job_kind:
      filters.append(Job.job_kind == query.job_kind)
    if query.owner_id:
      filters.append(Job.owner_id == query.owner_id)
    if query.book_id:
      filters.append(Job.book_id == query.book_id)
    # The breakdown ignores the status filter so the UI can show every bucket.
    breakdown_filters = list(filters)
    if query.status:
      filters.append(Job.status == query.status)

    sort_column = _SORT_COLUMNS.get(query.sort_by, Job.created_at)
    order = sort_column.asc() if query.sort_order.lower() == "asc" else sort_column.desc()

    async with self._session_factory() as session:
      stmt = select(Job).order_by(order, Job.job_id.asc()).limit(query.limit).offset(query.offset)
      count_stmt = select(func.count()).select_from(Job)
      breakdown_stmt = select(Job.status, func.count()).group_by(Job.status)
      if filters:
        stmt = stmt.where(and_(*filters))
        count_stmt = count_stmt.where(and_(*filters))
      if breakdown_filters:
        breakdown_stmt = breakdown_stmt.where(and_(*breakdown_filters))

      total = await session.scalar(count_stmt)
      rows = (await session.execute(stmt)).scalars().all()
      breakdown = {str(status): int(count) for status, count in (await session.execute(breakdown_stmt)).all()}
      items = [await self._to_record(session, row) for row in rows]
      return JobPage(items=items, total=int(total or 0), status_counts=breakdown)

  async def list_successful_trainings(self, owner_id: str) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = (
        select(Job)
        .where(Job.owner_id == owner_id, Job.job_kind == "training", Job.status == "succeeded", Job.result_json.is_not(None))
        .order_by(Job.completed_at.desc())
      )
      rows = (await session.execute(stmt)).scalars().all()
      records = [await self._to_record(session, row) for row in rows]
      return [record for record in records if (record.result or {}).get("version")]

  def _add_events(self, session: AsyncSession, job_id: str, events: Sequence[JobEvent]) -> None:
    for event in events:
      session.add(JobEventRow(job_id=job_id, event_type=event.event_type, message=event.message, payload_json=event.metadata, event_timestamp=event.timestamp))

  async def _to_record(self, session: AsyncSession, row: Job) -> JobRecord:
    stmt = select(JobEventRow).where(JobEventRow.job_id == row.job_id).order_by(JobEventRow.id.asc())
    event_rows = (await session.execute(stmt)).scalars().all()
    events = [JobEvent(event_type=item.event_type, message=item.message, timestamp=item.event_timestamp, metadata=item.payload_json) for item in event_rows]
    return JobRecord(
      job_id=row.job_id,
      job_kind=row.job_kind,
      owner_id=row.owner_id,
      status=row.status,
      external_job_id=row.external_job_id,
      created_at=row.created_at,
      updated_at=row.updated_at,
      book_id=row.book_id,
      label=row.label,
      progress=float(row.progress or 0.0),
      attempts=int(row.attempts),
      max_attempts=int(row.max_attempts),
      payload=dict(row.payload_json or {}),
      result=row.result_json,
      error=row.error,
      error_code=row.error_code,
      logs=list(row.logs_json or []),
      events=events,
      started_at=row.started_at,
      completed_at=row.completed_at,
      version=int(row.version),
    )
