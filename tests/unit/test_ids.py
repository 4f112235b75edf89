from __future__ import annotations

import re

from app.utils.ids import create_placeholder_handle, generate_job_id, is_placeholder_handle, slugify_label, unique_model_name


def test_placeholder_handle_shape() -> None:
  handle = create_placeholder_handle("Ava's Model")
  assert re.fullmatch(r"pending:ava-s-model:\d{13}:[a-z0-9]{8}", handle)
  assert is_placeholder_handle(handle)


def test_placeholder_handles_are_unique() -> None:
  assert create_placeholder_handle("x") != create_placeholder_handle("x")


def test_real_handles_are_not_placeholders() -> None:
  assert not is_placeholder_handle("r8-abc123")
  assert is_placeholder_handle("")
  assert is_placeholder_handle(None)


def test_slugify_label_falls_back() -> None:
  assert slugify_label("  Hello World!  ") == "hello-world"
  assert slugify_label("***") == "job"
  assert slugify_label(None, fallback="model") == "model"


def test_unique_model_name_appends_epoch_ms() -> None:
  assert re.fullmatch(r"maya-\d{13}", unique_model_name("Maya"))


def test_job_ids_are_uuids() -> None:
  assert re.fullmatch(r"[0-9a-f-]{36}", generate_job_id())
