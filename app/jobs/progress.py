"""Progress extraction from provider log output."""

from __future__ import annotations

import re

MAX_TRACKED_LOGS = 500

# tqdm style: " 45%|#####     | 450/1000 [...]"
_PERCENT_BAR = re.compile(r"(\d{1,3}(?:\.\d+)?)%\|")
_STEP_FRACTION = re.compile(r"\|\s*(\d+)/(\d+)\b")


def split_log_lines(logs: str | None, *, max_lines: int = MAX_TRACKED_LOGS) -> list[str]:
  """Split raw provider logs into the trailing non-empty lines, bounded."""
  if not logs:
    return []
  # Carriage returns are how tqdm redraws a bar in place.
  lines = [line.strip() for line in re.split(r"[\r\n]+", logs)]
  kept = [line for line in lines if line]
  return kept[-max_lines:] if max_lines > 0 else []


def parse_log_progress(logs: str | None) -> float | None:
  """Return the most recent percentage printed in the logs, or None."""
  if not logs:
    return None
  for line in reversed(re.split(r"[\r\n]+", logs)):
    match = _PERCENT_BAR.search(line)
    if match:
      return float(match.group(1))
    fraction = _STEP_FRACTION.search(line)
    if fraction and int(fraction.group(2)) > 0:
      return 100.0 * int(fraction.group(1)) / int(fraction.group(2))
  return None
