"""Replicate REST client used to create, poll and cancel trainings and predictions."""

from __future__ import annotations

import logging
from typing import Any

import httpx
import msgspec

from app.config import Settings
from app.providers.contracts import JobProvider, ProviderError, ProviderEvent, ProviderJobType, ProviderRequest, TransientProviderError

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = frozenset({408, 429})
_COLLECTIONS = {"training": "trainings", "prediction": "predictions"}


class ReplicateClient(JobProvider):
  """Thin async wrapper over Replicate's HTTP API.

  Network failures, timeouts, throttling and 5xx answers raise
  ``TransientProviderError`` so the dispatcher may retry them; any other
  non-2xx answer raises ``ProviderError``.
  """

  def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._settings = settings
    headers = {"content-type": "application/json"}
    if settings.replicate_api_token:
      headers["authorization"] = f"Bearer {settings.replicate_api_token}"
    self._client = httpx.AsyncClient(base_url=settings.replicate_base_url, headers=headers, timeout=settings.replicate_timeout_seconds, transport=transport, trust_env=False)

  async def aclose(self) -> None:
    await self._client.aclose()

  async def submit(self, request: ProviderRequest) -> ProviderEvent:
    if request.destination_model is not None:
      await self.create_model(**request.destination_model)
    logger.info("Creating Replicate %s via %s", request.job_type, request.path)
    return await self._request_event("POST", request.path, json=request.body)

  async def fetch(self, job_type: ProviderJobType, external_job_id: str) -> ProviderEvent:
    return await self._request_event("GET", f"/{_COLLECTIONS[job_type]}/{external_job_id}")

  async def cancel(self, job_type: ProviderJobType, external_job_id: str) -> ProviderEvent:
    logger.info("Canceling Replicate %s %s", job_type, external_job_id)
    return await self._request_event("POST", f"/{_COLLECTIONS[job_type]}/{external_job_id}/cancel")

  async def create_model(self, owner: str, name: str, *, visibility: str = "private", hardware: str = "gpu-t4", description: str | None = None) -> None:
    """Create the destination model a training writes its versions into."""
    body: dict[str, Any] = {"owner": owner, "name": name, "visibility": visibility, "hardware": hardware}
    if description:
      body["description"] = description
    try:
      await self._send("POST", "/models", json=body)
    except ProviderError as exc:
      # Reusing an existing destination is fine.
      if exc.status_code != 409:
        raise
      logger.info("Replicate model %s/%s already exists", owner, name)

  async def _request_event(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> ProviderEvent:
    response = await self._send(method, path, json=json)
    try:
      return msgspec.json.decode(response.content, type=ProviderEvent)
    except msgspec.ValidationError as exc:
      raise ProviderError(f"Unexpected Replicate response for {method} {path}: {exc}", status_code=response.status_code) from exc
    except msgspec.DecodeError as exc:
      raise ProviderError(f"Replicate returned a non-JSON body for {method} {path}", status_code=response.status_code) from exc

  async def _send(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> httpx.Response:
    try:
      response = await self._client.request(method, path, json=json)
    except httpx.TimeoutException as exc:
      raise TransientProviderError(f"Replicate request timed out: {method} {path}") from exc
    except httpx.RequestError as exc:
      raise TransientProviderError(f"Replicate request failed: {method} {path}: {exc}") from exc

    if response.is_success:
      return response

    detail = _error_detail(response)
    message = f"Replicate returned {response.status_code} for {method} {path}: {detail}"
    if response.status_code >= 500 or response.status_code in _TRANSIENT_STATUS_CODES:
      logger.warning(message)
      raise TransientProviderError(message, status_code=response.status_code)
    logger.error(message)
    raise ProviderError(message, status_code=response.status_code)


def _error_detail(response: httpx.Response) -> str:
  try:
    body = response.json()
  except ValueError:
    return response.text[:500]
  if isinstance(body, dict):
    return str(body.get("detail") or body.get("title") or body)[:500]
  return str(body)[:500]
