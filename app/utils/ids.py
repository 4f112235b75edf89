"""Identifier utilities."""

from __future__ import annotations

import re
import secrets
import string
import time
import uuid

PLACEHOLDER_PREFIX = "pending:"
_LABEL_PATTERN = re.compile(r"[^a-z0-9-]+")
_TOKEN_ALPHABET = string.ascii_lowercase + string.digits


def generate_job_id() -> str:
  """Return a new job identifier."""
  return str(uuid.uuid4())


def slugify_label(value: str | None, *, fallback: str = "job") -> str:
  """Lowercase a label and collapse anything outside [a-z0-9-] into dashes."""
  if not isinstance(value, str) or value.strip() == "":
    return fallback
  slug = _LABEL_PATTERN.sub("-", value.strip().lower()).strip("-")
  return slug or fallback


def create_placeholder_handle(label: str | None = None) -> str:
  """Return a local stand-in external handle: pending:<label>:<epoch-ms>:<token>."""
  token = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(8))
  safe_label = slugify_label(label, fallback="job")
  return f"{PLACEHOLDER_PREFIX}{safe_label}:{int(time.time() * 1000)}:{token}"


def is_placeholder_handle(value: str | None) -> bool:
  """Placeholders (and missing handles) cannot be polled or canceled at the provider."""
  if not isinstance(value, str) or value == "":
    return True
  return value.startswith(PLACEHOLDER_PREFIX)


def unique_model_name(base: str | None) -> str:
  """Build a provider-safe unique model name from a user supplied base."""
  return f"{slugify_label(base, fallback='model')}-{int(time.time() * 1000)}"
