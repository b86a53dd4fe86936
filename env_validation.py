"""Environment variable validation and settings loading."""

import logging
import os
from dataclasses import dataclass
from typing import Dict

logger = logging.getLogger(__name__)

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class ConfigurationError(Exception):
    """Raised when environment variables are missing or invalid."""
    pass


@dataclass(frozen=True)
class Settings:
    db_path: str = "data.db"
    db_max_connections: int = 10
    projection_cache_ttl: float = 60.0
    enforce_retry_limit: bool = False
    log_level: str = "INFO"


def validate_environment() -> None:
    """Apply defaults and validate the service's environment variables.

    Raises ConfigurationError if validation fails.
    """
    defaults: Dict[str, str] = {
        "DB_PATH": "data.db",
        "DB_MAX_CONNECTIONS": "10",
        "PROJECTION_CACHE_TTL": "60",
        "LOG_LEVEL": "INFO",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    if get_env_int("DB_MAX_CONNECTIONS", 10) <= 0:
        raise ConfigurationError("DB_MAX_CONNECTIONS must be a positive integer")

    try:
        ttl = float(os.environ["PROJECTION_CACHE_TTL"])
    except ValueError as exc:
        raise ConfigurationError(
            f"Invalid number for PROJECTION_CACHE_TTL: {os.environ['PROJECTION_CACHE_TTL']}"
        ) from exc
    if ttl < 0:
        raise ConfigurationError("PROJECTION_CACHE_TTL must be >= 0")

    level = os.environ["LOG_LEVEL"].upper()
    if level not in _LOG_LEVELS:
        raise ConfigurationError(f"Invalid LOG_LEVEL: {os.environ['LOG_LEVEL']}")

    if os.getenv("ENFORCE_RETRY_LIMIT") is None:
        logger.info("ENFORCE_RETRY_LIMIT not set; retry limits are left to the caller")


def load_settings() -> Settings:
    """Validate the environment and return the resulting settings."""
    validate_environment()
    return Settings(
        db_path=os.environ["DB_PATH"],
        db_max_connections=get_env_int("DB_MAX_CONNECTIONS", 10),
        projection_cache_ttl=float(os.environ["PROJECTION_CACHE_TTL"]),
        enforce_retry_limit=get_env_bool("ENFORCE_RETRY_LIMIT", False),
        log_level=os.environ["LOG_LEVEL"].upper(),
    )


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid integer for {name}: {value}") from exc
