from __future__ import annotations

import json
from dataclasses import replace

import httpx
import pytest

from app.providers.contracts import ProviderError, ProviderRequest, TransientProviderError
from app.providers.replicate import ReplicateClient


def _client(settings, handler) -> ReplicateClient:
  configured = replace(settings, replicate_api_token="r8_test", replicate_base_url="https://api.replicate.test/v1")
  return ReplicateClient(configured, transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_submit_creates_destination_model_then_training(settings) -> None:
  calls: list[tuple[str, str, dict]] = []

  def handler(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content) if request.content else {}
    calls.append((request.method, request.url.path, body))
    assert request.headers["authorization"] == "Bearer r8_test"
    if request.url.path.endswith("/models"):
      return httpx.Response(409, json={"detail": "already exists"})
    return httpx.Response(201, json={"id": "tr-1", "status": "starting", "urls": {"get": "x"}})

  client = _client(settings, handler)
  request = ProviderRequest(
    job_type="training",
    body={"input": {"steps": 10}, "destination": "storyteam/ava-1"},
    path="/models/ostris/flux-dev-lora-trainer/versions/v1/trainings",
    destination_model={"owner": "storyteam", "name": "ava-1", "visibility": "private", "hardware": "gpu-t4", "description": "Ava"},
  )
  try:
    event = await client.submit(request)
  finally:
    await client.aclose()

  assert event.id == "tr-1"
  assert [(method, path) for method, path, _ in calls] == [("POST", "/v1/models"), ("POST", "/v1/models/ostris/flux-dev-lora-trainer/versions/v1/trainings")]
  assert calls[0][2]["name"] == "ava-1"
  assert calls[1][2]["destination"] == "storyteam/ava-1"


@pytest.mark.anyio
async def test_fetch_and_cancel_use_collection_paths(settings) -> None:
  seen: list[tuple[str, str]] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append((request.method, request.url.path))
    status = "canceled" if request.url.path.endswith("/cancel") else "processing"
    return httpx.Response(200, json={"id": "p-1", "status": status, "logs": "10%|"})

  client = _client(settings, handler)
  try:
    fetched = await client.fetch("prediction", "p-1")
    canceled = await client.cancel("training", "t-1")
  finally:
    await client.aclose()

  assert fetched.status == "processing"
  assert fetched.logs == "10%|"
  assert canceled.status == "canceled"
  assert seen == [("GET", "/v1/predictions/p-1"), ("POST", "/v1/trainings/t-1/cancel")]


@pytest.mark.anyio
@pytest.mark.parametrize(("status_code", "transient"), [(500, True), (503, True), (429, True), (408, True), (400, False), (404, False), (422, False)])
async def test_error_statuses_map_to_provider_errors(settings, status_code, transient) -> None:
  client = _client(settings, lambda request: httpx.Response(status_code, json={"detail": "nope"}))
  try:
    with pytest.raises(ProviderError) as excinfo:
      await client.fetch("training", "t-1")
  finally:
    await client.aclose()

  assert isinstance(excinfo.value, TransientProviderError) is transient
  assert excinfo.value.status_code == status_code
  assert "nope" in str(excinfo.value)


@pytest.mark.anyio
async def test_network_errors_are_transient(settings) -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)

  client = _client(settings, handler)
  try:
    with pytest.raises(TransientProviderError):
      await client.fetch("training", "t-1")
  finally:
    await client.aclose()


@pytest.mark.anyio
async def test_malformed_body_is_a_provider_error(settings) -> None:
  client = _client(settings, lambda request: httpx.Response(200, text="<html>"))
  try:
    with pytest.raises(ProviderError) as excinfo:
      await client.fetch("training", "t-1")
  finally:
    await client.aclose()

  assert not isinstance(excinfo.value, TransientProviderError)


@pytest.mark.anyio
async def test_model_creation_errors_other_than_conflict_propagate(settings) -> None:
  client = _client(settings, lambda request: httpx.Response(403, json={"detail": "forbidden"}))
  try:
    with pytest.raises(ProviderError) as excinfo:
      await client.create_model("storyteam", "ava-1")
  finally:
    await client.aclose()

  assert excinfo.value.status_code == 403
