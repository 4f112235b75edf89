from __future__ import annotations

import base64
import json
import time
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.providers.webhooks import compute_signature

SECRET = "whsec_" + base64.b64encode(b"storybook-webhook-secret").decode()


@pytest.fixture
def client(service):
  app.state.job_service = service
  yield TestClient(app)
  del app.state.job_service


def _signed_headers(body: bytes) -> dict[str, str]:
  timestamp = str(int(time.time()))
  return {
    "content-type": "application/json",
    "webhook-id": "msg_1",
    "webhook-timestamp": timestamp,
    "webhook-signature": f"v1,{compute_signature(SECRET, 'msg_1', timestamp, body)}",
  }


def test_webhook_applies_provider_event(client, repo, record_factory) -> None:
  repo.seed(record_factory())

  response = client.post("/webhooks/replicate", json={"id": "r8-abc", "status": "succeeded", "output": {"version": "storyteam/ava:v1", "weights": "https://cdn.test/w"}})

  assert response.status_code == 200
  assert response.json() == {"status": "ok"}
  stored = repo.stored("job-1")
  assert stored.status == "succeeded"
  assert stored.result["version"] == "storyteam/ava:v1"


@pytest.mark.parametrize("body", [b'{"id": "r8-nobody", "status": "succeeded"}', b'{"id": "r8-abc", "status": "sleeping"}', b"not json", b'{"status": "succeeded"}'])
def test_webhook_acknowledges_unusable_payloads(client, repo, record_factory, body) -> None:
  repo.seed(record_factory())

  response = client.post("/webhooks/replicate", content=body, headers={"content-type": "application/json"})

  assert response.status_code == 200
  assert repo.stored("job-1").version == 0


def test_signed_webhooks(client, service, repo, record_factory) -> None:
  service.settings = replace(service.settings, replicate_webhook_secret=SECRET)
  repo.seed(record_factory())
  body = json.dumps({"id": "r8-abc", "status": "processing", "progress": 30}).encode()

  forged = _signed_headers(body)
  forged["webhook-signature"] = "v1,Zm9yZ2Vk"
  assert client.post("/webhooks/replicate", content=body, headers=forged).status_code == 200
  assert repo.stored("job-1").progress == 0.0

  assert client.post("/webhooks/replicate", content=body, headers=_signed_headers(body)).status_code == 200
  assert repo.stored("job-1").progress == 30.0


def test_webhook_acknowledges_when_storage_fails(client, repo, monkeypatch) -> None:
  async def unavailable(external_job_id: str):
    raise ConnectionError("database is unreachable")

  monkeypatch.setattr(repo, "get_job_by_external_id", unavailable)

  response = client.post("/webhooks/replicate", json={"id": "r8-abc", "status": "succeeded"})

  assert response.status_code == 200
  assert response.json() == {"status": "ok"}
