"""Structured logging for chatrelay.

Application events go through structlog; records from the standard library
(uvicorn, pymongo, httpx) are rendered by the same ``ProcessorFormatter`` so
every line carries the correlation id and passes PII redaction. Configured
once on import from ``LOG_LEVEL`` and ``LOG_JSON``.
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# keys are matched by substring, so ``token_id`` and ``user_email`` are masked too
_PII_KEYS = ("password", "secret", "token", "api_key", "authorization", "email")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's id (``X-Request-ID``) or mint a new one for this context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(pii in key.lower() for pii in _PII_KEYS):
            event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


_SHARED_PROCESSORS = [
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    _add_correlation_id,
    _redact_pii,
]


def build_formatter(json_output: bool = True) -> structlog.stdlib.ProcessorFormatter:
    if json_output:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=False)]
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    )


class _ChatrelayHandler(logging.StreamHandler):
    """Marker type so reconfiguring replaces our handler and leaves others alone."""


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = _ChatrelayHandler(sys.stdout)
    handler.setFormatter(build_formatter(json_output))

    root = logging.getLogger()
    for existing in [h for h in root.handlers if isinstance(h, _ChatrelayHandler)]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # uvicorn installs its own handlers unless log_config=None; either way send them to root
    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
