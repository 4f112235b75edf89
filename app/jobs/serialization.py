"""Wire shape of job records for the API and the live stream."""

from __future__ import annotations

from typing import Any

import msgspec

from app.jobs.models import JobRecord
from app.utils.ids import is_placeholder_handle


def serialize_record(record: JobRecord, *, include_events: bool = True) -> dict[str, Any]:
  """Return a JSON-ready snapshot of a job record."""
  data: dict[str, Any] = msgspec.to_builtins(record)
  # Derived flags so clients need not know the placeholder handle format.
  data["is_terminal"] = record.is_terminal
  data["is_dispatched"] = not is_placeholder_handle(record.external_job_id)
  if not include_events:
    data.pop("events", None)
  return data


def encode_record(record: JobRecord) -> bytes:
  """Encode a full snapshot as compact JSON bytes."""
  return msgspec.json.encode(serialize_record(record))
