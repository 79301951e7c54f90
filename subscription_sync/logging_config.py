"""Structured logging configuration using structlog.

Every event carries the app name, the bound request context (request_id,
route, email, customer_id) and an ISO timestamp. Cancel tokens and shared
secrets are cut to a short prefix before rendering so a log line can never
be replayed as a credential.
"""

import logging
import os
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, Processor

APP_NAME = "subscription-sync"

# Keys whose values are credentials or capability tokens
SENSITIVE_KEYS = ("token", "authorization", "secret", "api_key")
MASK_PREFIX_LENGTH = 12

# Client libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "google.api_core", "google.auth", "urllib3")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["app"] = APP_NAME
    return event_dict


def mask_sensitive_values(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Truncate tokens and credentials to a short, non-replayable prefix."""
    for key in SENSITIVE_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > MASK_PREFIX_LENGTH:
            event_dict[key] = f"{value[:MASK_PREFIX_LENGTH]}..."
    return event_dict


def is_debug_mode() -> bool:
    return os.getenv("LOG_LEVEL", "INFO").upper() == "DEBUG"


def drop_debug_in_production(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Drop DEBUG events unless LOG_LEVEL=DEBUG."""
    if method_name == "debug" and not is_debug_mode():
        raise structlog.DropEvent
    return event_dict


def build_processors(numeric_level: int, json_format: bool, include_timestamp: bool = True) -> list[Processor]:
    """Processor chain shared by the HTTP service and the one-shot commands.

    Masking runs after the context merge so tokens bound by the middleware
    are covered too.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        mask_sensitive_values,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    if numeric_level > logging.DEBUG:
        processors.append(drop_debug_in_production)

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True, exception_formatter=structlog.dev.plain_traceback))
    return processors


def configure_logging(log_level: str = "INFO", json_format: bool = True, include_timestamp: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: JSON lines when True, colored console output otherwise
        include_timestamp: Add UTC ISO8601 timestamps
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)

    # Provider URLs and Pub/Sub internals stay out of INFO logs
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=build_processors(numeric_level, json_format, include_timestamp),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind values included in every later event of the current request.

    Example:
        bind_context(request_id="abc123", email="jane@example.com")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
