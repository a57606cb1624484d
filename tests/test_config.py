"""Settings validation tests."""

import pytest
from pydantic import ValidationError

from promptforge.core.config import Settings


def test_defaults_in_test_environment():
    settings = Settings(APP_ENV="test")

    assert settings.poll_interval_seconds == 3.0
    assert settings.max_wait_seconds == 300.0
    assert settings.max_outputs_per_batch == 8
    assert settings.upload_validity.total_seconds() == 24 * 3600
    assert settings.upload_grace_margin.total_seconds() == 4 * 3600


def test_production_requires_api_token(monkeypatch):
    monkeypatch.delenv("REPLICATE_API_TOKEN", raising=False)

    with pytest.raises(ValidationError, match="REPLICATE_API_TOKEN"):
        Settings(APP_ENV="production", REPLICATE_API_TOKEN="")

    assert Settings(APP_ENV="production", REPLICATE_API_TOKEN="r8_test").replicate_api_token


def test_grace_margin_must_be_shorter_than_validity():
    with pytest.raises(ValidationError, match="UPLOAD_GRACE_HOURS"):
        Settings(APP_ENV="test", UPLOAD_VALIDITY_HOURS=4, UPLOAD_GRACE_HOURS=4)
