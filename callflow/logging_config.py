"""
Structured logging for the call routing service.

Production renders one JSON object per line for the log shipper; local
development gets structlog's console renderer. Two context variables tag
every entry emitted while a request or webhook is being handled:

- ``trace_id``: set by ``RequestIdMiddleware`` for each HTTP request.
- ``call_sid``: set by the router and tracker once a Twilio CallSid is known.

Usage:
    from callflow.logging_config import bind_call, get_logger

    logger = get_logger(__name__)
    bind_call("CA123")
    logger.info("inbound_call_routed", forward_to="+15550000002")
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

from callflow.config import get_settings

trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
call_sid_var: ContextVar[str] = ContextVar("call_sid", default="")

# Libraries that log every HTTP round trip at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore", "hpack", "urllib3", "twilio.http_client")


def _add_call_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Copy the active trace id and CallSid onto the entry unless already given."""
    for key, var in (("trace_id", trace_id_var), ("call_sid", call_sid_var)):
        value = var.get("")
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def generate_trace_id() -> str:
    return uuid.uuid4().hex[:12]


def bind_call(call_sid: str | None) -> None:
    """Tag subsequent log entries in this context with a Twilio CallSid."""
    call_sid_var.set(call_sid or "")


def _renderer(is_prod: bool) -> structlog.types.Processor:
    if is_prod:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging() -> None:
    """
    Route structlog and stdlib logging through a single stdout handler.

    uvicorn, supabase and twilio log through stdlib, so the root logger
    gets the same ``ProcessorFormatter`` as our own structlog loggers.
    """
    settings = get_settings()

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_call_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(settings.is_production),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
