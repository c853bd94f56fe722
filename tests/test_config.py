from __future__ import annotations

import os
from pathlib import Path

import pytest

from scopedrop.config import ConfigError, ResilienceConfig, load_config


ENV_VARS = [
    "ERROR_LOG_CAPACITY",
    "ERROR_LOG_TIMEZONE",
    "CACHE_DEFAULT_TTL_SECONDS",
    "FETCH_TIMEOUT_SECONDS",
    "FETCH_MAX_RETRIES",
    "FETCH_RETRY_DELAY_SECONDS",
    "FEED_BASE_URL",
    "PREFERENCES_DB_PATH",
    "LOG_LEVEL",
    "LOG_DIR",
    "STRUCTURED_LOGS",
]


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    empty = tmp_path / "empty.env"
    empty.write_text("")
    return empty


def test_defaults(clean_env: Path) -> None:
    config = load_config(str(clean_env))
    assert config == ResilienceConfig()
    assert config.error_log_capacity == 100
    assert config.cache_default_ttl == 1800
    assert config.fetch_max_retries == 0


def test_environment_overrides(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ERROR_LOG_CAPACITY", "25")
    monkeypatch.setenv("ERROR_LOG_TIMEZONE", "America/New_York")
    monkeypatch.setenv("CACHE_DEFAULT_TTL_SECONDS", "0")
    monkeypatch.setenv("FETCH_TIMEOUT_SECONDS", "7.5")
    monkeypatch.setenv("FETCH_MAX_RETRIES", "2")
    monkeypatch.setenv("STRUCTURED_LOGS", "true")

    config = load_config(str(clean_env))

    assert config.error_log_capacity == 25
    assert config.tzinfo().zone == "America/New_York"
    assert config.cache_default_ttl is None
    assert config.fetch_timeout == 7.5
    assert config.fetch_max_retries == 2
    assert config.structured_logs is True


def test_dotenv_file_is_loaded(clean_env: Path, tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("FEED_BASE_URL=https://api.example.com/feeds\nERROR_LOG_CAPACITY=0\n")

    try:
        config = load_config(str(env_file))
    finally:
        # load_dotenv exports into the process environment
        os.environ.pop("FEED_BASE_URL", None)
        os.environ.pop("ERROR_LOG_CAPACITY", None)

    assert config.feed_base_url == "https://api.example.com/feeds"
    assert config.error_log_capacity is None


@pytest.mark.parametrize("name,value", [
    ("ERROR_LOG_CAPACITY", "lots"),
    ("FETCH_TIMEOUT_SECONDS", "soon"),
    ("FETCH_TIMEOUT_SECONDS", "-1"),
    ("FETCH_MAX_RETRIES", "-3"),
    ("ERROR_LOG_TIMEZONE", "Mars/Olympus_Mons"),
])
def test_invalid_values_raise(clean_env: Path, monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigError):
        load_config(str(clean_env))
