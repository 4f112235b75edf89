from __future__ import annotations

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class Job(Base):
  __tablename__ = "jobs"
  __table_args__ = (
    Index("ix_jobs_kind_status", "job_kind", "status"),
    Index("ix_jobs_owner_kind_status", "owner_id", "job_kind", "status"),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  job_kind: Mapped[str] = mapped_column(String, nullable=False)
  owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  book_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  label: Mapped[str | None] = mapped_column(String, nullable=True)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  external_job_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  payload_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  result_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  error_code: Mapped[str | None] = mapped_column(String, nullable=True)
  logs_json: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
  created_at: Mapped[str] = mapped_column(String, nullable=False)
  updated_at: Mapped[str] = mapped_column(String, nullable=False)
  started_at: Mapped[str | None] = mapped_column(String, nullable=True)
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)
  version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class JobEvent(Base):
  __tablename__ = "job_events"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  message: Mapped[str] = mapped_column(Text, nullable=False)
  payload_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  event_timestamp: Mapped[str] = mapped_column(String, nullable=False)
  created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
