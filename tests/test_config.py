import dataclasses

import pytest

from audit_chatbot.config import EngineSettings, load_settings


def test_defaults():
    settings = EngineSettings()
    assert 0.0 <= settings.confidence_threshold <= 1.0
    assert settings.store_batch_limit > 0


@pytest.mark.parametrize(
    "overrides",
    [
        {"confidence_threshold": 1.5},
        {"worker_pool_size": 0},
        {"retry_attempts": 0},
        {"retry_backoff_seconds": -1.0},
        {"store_batch_limit": 0},
        {"default_page_size": 0},
        {"fallback_timeout_seconds": 0},
    ],
)
def test_invalid_settings_rejected(overrides):
    with pytest.raises(ValueError):
        EngineSettings(**overrides)


def test_settings_are_immutable():
    with pytest.raises(dataclasses.FrozenInstanceError):
        EngineSettings().retry_attempts = 5


def test_load_settings_is_cached():
    assert load_settings() is load_settings()
    assert load_settings(refresh=True) == load_settings()
