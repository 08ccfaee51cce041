"""Environment variable validation and management."""

import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class ConfigurationError(Exception):
    """Raised when an environment variable holds an invalid value."""
    pass

DEFAULTS: Dict[str, str] = {
    "DB_PATH": "data.db",
    "PROGRESS_WRITE_RETRIES": "3",
    "RANKING_MAX_WORKERS": "1",
    "CANDIDATE_CACHE_TTL_SECONDS": "300",
    "ESCALATION_EVENTS_ENABLED": "true",
}

_POSITIVE_INTS = ("PROGRESS_WRITE_RETRIES", "RANKING_MAX_WORKERS", "CANDIDATE_CACHE_TTL_SECONDS")

_TRUE_VALUES = {"1", "true", "yes", "on", "enabled"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}

def validate_environment() -> None:
    """Apply defaults and validate the service configuration.

    Raises ConfigurationError if a value cannot be used.
    """
    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    for var in _POSITIVE_INTS:
        if get_env_int(var) < 1:
            raise ConfigurationError(f"{var} must be a positive integer, got {os.getenv(var)!r}")

    flag = os.getenv("ESCALATION_EVENTS_ENABLED", "").strip().lower()
    if flag not in _TRUE_VALUES | _FALSE_VALUES:
        raise ConfigurationError(f"Invalid boolean for ESCALATION_EVENTS_ENABLED: {flag!r}")

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES

def get_env_int(name: str, default: Optional[int] = None) -> int:
    """Get integer value from environment variable, falling back to DEFAULTS."""
    value = os.getenv(name)
    if value is None or not value.strip():
        if default is not None:
            return default
        value = DEFAULTS.get(name)
        if value is None:
            raise ConfigurationError(f"{name} is not set and has no default")
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc
