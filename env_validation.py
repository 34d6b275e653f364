"""Environment variable validation and management."""

import logging
import os
from typing import Dict

logger = logging.getLogger(__name__)

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_TRUE_VALUES = {"1", "true", "yes", "on", "enabled"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


class EnvironmentError(Exception):
    """Raised when environment variables are invalid."""
    pass


def validate_environment() -> None:
    """Apply defaults and validate the configuration variables.

    Raises EnvironmentError if validation fails.
    """
    defaults: Dict[str, str] = {
        "DB_PATH": "data.db",
        "CONTENT_PACK_PATH": "content/starter_pack.json",
        "REVIEW_QUEUE_ENABLED": "true",
        "BADGES_ENABLED": "true",
        "LOG_LEVEL": "INFO",
        "DEFAULT_DAILY_GOAL": "3",
        "MAX_ACTIVE_SESSIONS": "500",
        "SESSION_IDLE_MINUTES": "120",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    level = os.environ["LOG_LEVEL"].upper()
    if level not in LOG_LEVELS:
        raise EnvironmentError(f"Invalid LOG_LEVEL: {os.environ['LOG_LEVEL']}")

    for var in ("REVIEW_QUEUE_ENABLED", "BADGES_ENABLED"):
        value = os.environ[var].strip().lower()
        if value not in _TRUE_VALUES | _FALSE_VALUES:
            raise EnvironmentError(f"Invalid boolean for {var}: {os.environ[var]}")

    goal = get_env_int("DEFAULT_DAILY_GOAL", 3)
    if not 1 <= goal <= 10:
        raise EnvironmentError(f"DEFAULT_DAILY_GOAL must be between 1 and 10, got {goal}")

    for var in ("MAX_ACTIVE_SESSIONS", "SESSION_IDLE_MINUTES"):
        if get_env_int(var, 1) < 1:
            raise EnvironmentError(f"{var} must be at least 1, got {os.environ[var]}")

    content_path = os.environ["CONTENT_PACK_PATH"]
    if not os.path.exists(content_path):
        logger.warning("Content pack not found at %s; rounds will be unavailable", content_path)

    for var in ("REVIEW_QUEUE_ENABLED", "BADGES_ENABLED"):
        if not get_env_bool(var, True):
            logger.warning("Optional subsystem disabled: %s", var)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUE_VALUES


def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as exc:
        raise EnvironmentError(f"Invalid integer for {name}: {value}") from exc
