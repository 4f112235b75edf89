"""UTC timestamp helpers shared by the job pipeline."""

from __future__ import annotations

from datetime import UTC, datetime


def now_iso() -> str:
  """Return the current UTC time as an ISO-8601 string with millisecond precision."""
  return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
