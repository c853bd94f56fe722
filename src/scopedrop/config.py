import os
from dataclasses import dataclass
from typing import Any, Optional

import pytz
from dotenv import load_dotenv

from scopedrop.utils.error_monitoring import ResilienceError


class ConfigError(ResilienceError):
    """An environment setting could not be parsed"""
    pass


@dataclass
class ResilienceConfig:
    """Runtime configuration"""
    # Diagnostic log
    error_log_capacity: Optional[int] = 100
    error_log_timezone: str = "UTC"

    # Single-flight cache (seconds; None = never expires)
    cache_default_ttl: Optional[float] = 30 * 60

    # Category fetching
    fetch_timeout: Optional[float] = 30.0
    fetch_max_retries: int = 0
    fetch_retry_delay: float = 1.0
    feed_base_url: str = "http://localhost:8000/feeds"

    # Preferences
    preferences_db_path: str = "data/preferences.db"

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"
    structured_logs: bool = False

    def tzinfo(self) -> Any:
        try:
            return pytz.timezone(self.error_log_timezone)
        except pytz.UnknownTimeZoneError as e:
            raise ConfigError(f"Unknown ERROR_LOG_TIMEZONE: {self.error_log_timezone}") from e


def _int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    return value if value > 0 else None


def _float(name: str, default: Optional[float], zero_means_none: bool = False) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None:
        return default
    if raw.strip() == '':
        return None if zero_means_none else default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ConfigError(f"{name} must not be negative")
    if zero_means_none and value == 0:
        return None
    return value


def load_config(dotenv_path: Optional[str] = None) -> ResilienceConfig:
    """Load configuration from the environment (and a .env file, if present)."""
    load_dotenv(dotenv_path)

    defaults = ResilienceConfig()
    retries_raw = os.getenv('FETCH_MAX_RETRIES', str(defaults.fetch_max_retries))
    try:
        retries = int(retries_raw)
    except ValueError as e:
        raise ConfigError(f"FETCH_MAX_RETRIES must be an integer, got {retries_raw!r}") from e
    if retries < 0:
        raise ConfigError("FETCH_MAX_RETRIES must not be negative")

    config = ResilienceConfig(
        error_log_capacity=_int('ERROR_LOG_CAPACITY', defaults.error_log_capacity),
        error_log_timezone=os.getenv('ERROR_LOG_TIMEZONE', defaults.error_log_timezone),
        cache_default_ttl=_float('CACHE_DEFAULT_TTL_SECONDS', defaults.cache_default_ttl, zero_means_none=True),
        fetch_timeout=_float('FETCH_TIMEOUT_SECONDS', defaults.fetch_timeout, zero_means_none=True),
        fetch_max_retries=retries,
        fetch_retry_delay=_float('FETCH_RETRY_DELAY_SECONDS', defaults.fetch_retry_delay) or 0.0,
        feed_base_url=os.getenv('FEED_BASE_URL', defaults.feed_base_url),
        preferences_db_path=os.getenv('PREFERENCES_DB_PATH', defaults.preferences_db_path),
        log_level=os.getenv('LOG_LEVEL', defaults.log_level),
        log_dir=os.getenv('LOG_DIR', defaults.log_dir),
        structured_logs=(os.getenv('STRUCTURED_LOGS', 'false').lower() == 'true'),
    )
    # fail fast on a bad timezone name
    config.tzinfo()
    return config
