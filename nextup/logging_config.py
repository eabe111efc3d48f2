"""
Structured logging configuration for NextUp.

Sets up structlog with:
- JSON output by default, console output for development
- Context variable merging (bind_contextvars) for per-operation context
- Redaction of catalog credentials (TMDB API keys, bearer tokens)
- Log level from the LOG_LEVEL environment variable
"""

import os
import re
import logging
from typing import Any, Dict, Optional

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Field names whose values are always redacted
SENSITIVE_FIELD_NAMES = {
    "api_key", "apikey", "api-key",
    "tmdb_api_key", "tmdb_key",
    "access_token", "token", "authorization", "bearer",
    "password", "secret",
}

# Fields that are never scrubbed, even if their value looks like a key
SAFE_FIELD_NAMES = {
    "event", "timestamp", "level", "service", "environment",
    "item_id", "profile_id", "key", "operation", "duration_ms",
}

_BEARER_PATTERN = re.compile(r"Bearer\s+[A-Za-z0-9_\-\.]+", re.IGNORECASE)
# TMDB v4 read tokens are JWTs
_JWT_PATTERN = re.compile(r"eyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+")
_API_KEY_PARAM_PATTERN = re.compile(r"(api_key=)[A-Za-z0-9]+", re.IGNORECASE)


def scrub_sensitive_data(value: Any, parent_key: Optional[str] = None) -> Any:
    """
    Recursively redact credentials from a log entry.

    Args:
        value: Value to scrub (dict, list, str or anything else)
        parent_key: Key under which ``value`` was found

    Returns:
        The value with sensitive data replaced by ``[REDACTED]``
    """
    if isinstance(value, dict):
        return {k: scrub_sensitive_data(v, k) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [scrub_sensitive_data(item, parent_key) for item in value]

    key = parent_key.lower() if isinstance(parent_key, str) else None
    if key in SAFE_FIELD_NAMES:
        return value
    if key in SENSITIVE_FIELD_NAMES:
        return "[REDACTED]"

    if isinstance(value, str):
        scrubbed = _BEARER_PATTERN.sub("Bearer [REDACTED]", value)
        scrubbed = _JWT_PATTERN.sub("[REDACTED]", scrubbed)
        scrubbed = _API_KEY_PARAM_PATTERN.sub(r"\1[REDACTED]", scrubbed)
        return scrubbed
    return value


def add_app_context(logger: Any, method_name: str, event_dict: Dict) -> Dict:
    """Tag every entry with the service name and environment."""
    event_dict["service"] = "nextup"
    event_dict["environment"] = os.getenv("NEXTUP_ENV", "local")
    return event_dict


def add_scrubbing(logger: Any, method_name: str, event_dict: Dict) -> Dict:
    """Processor wrapper around scrub_sensitive_data."""
    return scrub_sensitive_data(event_dict)


def configure_structlog():
    """Configure structlog processors and renderer for the current environment."""
    is_dev = os.getenv("NEXTUP_ENV") == "development" or os.getenv("DEBUG") == "1"

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_app_context,
        add_scrubbing,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if is_dev:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(LOG_LEVEL)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """
    Get a configured structlog logger.

    Args:
        name: Optional logger name (usually ``__name__``)
    """
    return structlog.get_logger(name)


configure_structlog()
