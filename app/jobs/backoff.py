"""Dispatch retry delay policy."""

from __future__ import annotations

import asyncio
import random


def compute_backoff_ms(attempt: int, *, initial_backoff_ms: int, max_backoff_ms: int, jitter: bool = True) -> float:
  """Exponential delay for the given 1-based attempt, capped, with +/-25% jitter."""
  if attempt < 1 or initial_backoff_ms <= 0:
    return 0.0
  backoff_ms = float(min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms))
  if jitter:
    jitter_range = backoff_ms * 0.25
    backoff_ms += random.uniform(-jitter_range, jitter_range)
  return max(0.0, backoff_ms)


async def sleep_backoff(attempt: int, *, initial_backoff_ms: int, max_backoff_ms: int, jitter: bool = True) -> float:
  """Sleep for the computed delay and return it in milliseconds."""
  delay_ms = compute_backoff_ms(attempt, initial_backoff_ms=initial_backoff_ms, max_backoff_ms=max_backoff_ms, jitter=jitter)
  if delay_ms > 0:
    await asyncio.sleep(delay_ms / 1000.0)
  return delay_ms
