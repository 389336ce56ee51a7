"""structlog setup: one line per event, key=value by default, JSON on request."""
from __future__ import annotations

import logging
import sys
from typing import Any, Literal

import structlog

LogFormat = Literal["kv", "json"]

REDACTED = "***"
# event keys whose values are credentials; matched case-insensitively
SECRET_KEYS = frozenset({"secret_key", "signature", "x-webhook-signature", "authorization", "password"})

# third-party loggers that are too chatty at INFO
QUIET_LOGGERS = {"asyncpg": logging.WARNING, "opentelemetry": logging.WARNING}

_ESCAPES = str.maketrans({"\\": "\\\\", "\n": "\\n", "\r": "\\r", "\t": "\\t"})


def _escape(value: Any) -> Any:
    return value.translate(_ESCAPES) if isinstance(value, str) else value


def escape_newlines(logger, method_name, event_dict):
    """Keep every entry on one line, tracebacks from format_exc_info included."""
    for key, value in event_dict.items():
        if isinstance(value, (list, tuple)):
            event_dict[key] = [_escape(item) for item in value]
        elif isinstance(value, dict):
            event_dict[key] = {k: _escape(v) for k, v in value.items()}
        else:
            event_dict[key] = _escape(value)
    return event_dict


def redact_secrets(logger, method_name, event_dict):
    """Mask credential values, also one level down in dicts such as headers."""
    for key, value in event_dict.items():
        if key.lower() in SECRET_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if isinstance(k, str) and k.lower() in SECRET_KEYS else v
                for k, v in value.items()
            }
    return event_dict


class SingleLineFormatter(logging.Formatter):
    """For stdlib records that bypass structlog (aiohttp.access and friends)."""

    def format(self, record):
        return super().format(record).replace("\n", "\\n").replace("\r", "\\r")


def _renderer(fmt: LogFormat):
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.processors.KeyValueRenderer(
        key_order=["timestamp", "level", "logger", "event"],
        drop_missing=True,
    )


def configure_logging(level: str = "INFO", fmt: LogFormat = "kv") -> None:
    """Send stdlib and structlog output to stdout.

    Example kv line::

        timestamp='2026-01-01T12:00:00Z' level='info' logger='webhook_service.services.executor'
        event='webhook_delivery succeeded' delivery_id='...' status_code=200
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())

    access = logging.getLogger("aiohttp.access")
    access.handlers = []
    access.propagate = True
    access.setLevel(logging.INFO)
    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_secrets,
    ]
    if fmt == "kv":
        # after format_exc_info so rendered tracebacks are escaped as well
        processors.append(escape_newlines)
    processors.append(_renderer(fmt))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
