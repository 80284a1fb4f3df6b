"""structlog setup for the API process and the auto-release job.

Development gets a colored console; every other environment emits one JSON
object per line. Inside an HTTP request each entry carries the request_id
bound by RequestContextMiddleware.

Gateway signatures and secrets never reach a log sink: ``redact_secrets``
masks them in every event dict before rendering.

Tamper signals (bad checkout signatures, forged webhooks) go through
``get_security_logger`` so they can be routed to their own sink.

Usage:
    from marketplace_escrow.logging_config import setup_logging, get_logger
    setup_logging(log_level="INFO", json_logs=True)
    logger = get_logger(__name__)
    logger.info("escrow.released", payment_id="abc-123", trigger="REVIEW")
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

SECURITY_LOGGER_NAME = "marketplace_escrow.security"

REDACTED = "***"
_SECRET_KEYS = frozenset(
    {"signature", "key_secret", "webhook_secret", "gateway_key_secret", "authorization"}
)

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore", "aiosqlite")


def redact_secrets(
    _logger: Any, _method: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask signature and secret values, however deep the caller nested them."""
    for key, value in event_dict.items():
        if key.lower() in _SECRET_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = redact_secrets(_logger, _method, dict(value))
    return event_dict


def _processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Route structlog through stdlib logging with a single stdout handler.

    Args:
        log_level: Root level name (DEBUG, INFO, ...). Unknown names mean INFO.
        json_logs: JSON lines when True, colored console output otherwise.
    """
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[*_processors(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Security events stay visible at any root level.
    logging.getLogger(SECURITY_LOGGER_NAME).setLevel(logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def get_security_logger() -> structlog.stdlib.BoundLogger:
    """Logger for tamper signals and other audit-worthy security events."""
    return structlog.get_logger(SECURITY_LOGGER_NAME)
