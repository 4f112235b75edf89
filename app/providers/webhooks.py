"""Inbound webhook authenticity checks for Replicate callbacks."""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from collections.abc import Mapping

SECRET_PREFIX = "whsec_"
DEFAULT_TOLERANCE_SECONDS = 300


class WebhookSignatureError(Exception):
  """Raised when a webhook fails signature validation."""


def _secret_bytes(secret: str) -> bytes:
  raw = secret.removeprefix(SECRET_PREFIX)
  try:
    return base64.b64decode(raw, validate=True)
  except ValueError as exc:
    raise WebhookSignatureError("Webhook secret is not valid base64") from exc


def compute_signature(secret: str, webhook_id: str, timestamp: str, body: bytes) -> str:
  """Return the base64 HMAC-SHA256 of ``<id>.<timestamp>.<body>``."""
  signed_content = f"{webhook_id}.{timestamp}.".encode() + body
  digest = hmac.new(_secret_bytes(secret), signed_content, hashlib.sha256).digest()
  return base64.b64encode(digest).decode()


def verify_replicate_signature(secret: str, headers: Mapping[str, str], body: bytes, *, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS, now: float | None = None) -> None:
  """Validate the webhook-id / webhook-timestamp / webhook-signature triple.

  The signature header holds space separated ``v1,<base64>`` entries; any
  match passes. Raises ``WebhookSignatureError`` otherwise.
  """
  webhook_id = headers.get("webhook-id")
  timestamp = headers.get("webhook-timestamp")
  signature_header = headers.get("webhook-signature")
  if not webhook_id or not timestamp or not signature_header:
    raise WebhookSignatureError("Missing webhook signature headers")

  try:
    sent_at = int(timestamp)
  except ValueError as exc:
    raise WebhookSignatureError("Invalid webhook timestamp") from exc
  current = time.time() if now is None else now
  if abs(current - sent_at) > tolerance_seconds:
    raise WebhookSignatureError("Webhook timestamp outside the accepted window")

  expected = compute_signature(secret, webhook_id, timestamp, body)
  for candidate in signature_header.split():
    _, _, value = candidate.partition(",")
    if value and hmac.compare_digest(value, expected):
      return
  raise WebhookSignatureError("Webhook signature mismatch")
