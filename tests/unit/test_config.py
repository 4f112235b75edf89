from __future__ import annotations

import pytest

from app.config import get_settings


@pytest.fixture
def fresh_settings(monkeypatch: pytest.MonkeyPatch):
  get_settings.cache_clear()
  yield monkeypatch
  get_settings.cache_clear()


def test_defaults(fresh_settings) -> None:
  settings = get_settings()
  assert settings.allowed_origins == ("http://localhost",)
  assert settings.job_max_attempts == 2
  assert settings.replicate_base_url == "https://api.replicate.com/v1"
  assert settings.stream_heartbeat_seconds == 25.0


def test_origins_are_split_and_trimmed(fresh_settings) -> None:
  fresh_settings.setenv("STORYBOOK_ALLOWED_ORIGINS", " https://a.test , https://b.test ,")
  assert get_settings().allowed_origins == ("https://a.test", "https://b.test")


def test_wildcard_origin_is_rejected(fresh_settings) -> None:
  fresh_settings.setenv("STORYBOOK_ALLOWED_ORIGINS", "*")
  with pytest.raises(ValueError, match="wildcard"):
    get_settings()


def test_public_base_url_must_be_absolute(fresh_settings) -> None:
  fresh_settings.setenv("STORYBOOK_PUBLIC_BASE_URL", "storybook.test")
  with pytest.raises(ValueError):
    get_settings()


def test_backoff_bounds_are_validated(fresh_settings) -> None:
  fresh_settings.setenv("STORYBOOK_DISPATCH_BACKOFF_INITIAL_MS", "1000")
  fresh_settings.setenv("STORYBOOK_DISPATCH_BACKOFF_MAX_MS", "10")
  with pytest.raises(ValueError):
    get_settings()
