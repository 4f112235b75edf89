import logging

import msgspec
from fastapi import APIRouter, Depends, Request

from app.api.deps import get_job_service
from app.api.models import WebhookAck
from app.jobs.ingestion import decode_provider_event
from app.providers.webhooks import WebhookSignatureError, verify_replicate_signature
from app.services.jobs import JobService

router = APIRouter()
logger = logging.getLogger("app.api.routes.webhooks")


@router.post("/replicate", response_model=WebhookAck)
async def replicate_webhook(
  request: Request,
  service: JobService = Depends(get_job_service),  # noqa: B008
) -> WebhookAck:
  """Ingest a Replicate callback. Always acknowledged so the provider stops retrying."""
  body = await request.body()

  secret = service.settings.replicate_webhook_secret
  if secret:
    try:
      verify_replicate_signature(secret, request.headers, body)
    except WebhookSignatureError as exc:
      logger.warning("Rejected Replicate webhook: %s", exc)
      return WebhookAck()

  try:
    event = decode_provider_event(body)
  except (msgspec.DecodeError, msgspec.ValidationError) as exc:
    logger.warning("Discarding malformed Replicate webhook: %s", exc)
    return WebhookAck()

  try:
    result = await service.ingestor.ingest(event)
  except Exception:  # noqa: BLE001
    # Local storage trouble must not turn into provider retries.
    logger.exception("Failed to apply Replicate webhook %s (%s); acknowledged without update", event.id, event.status)
    return WebhookAck()
  logger.info("Replicate webhook %s (%s) -> %s", event.id, event.status, result.outcome)
  return WebhookAck()
