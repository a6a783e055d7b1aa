"""structlog setup shared by every sentinel_auth module.

Loggers are obtained with ``get_logger(__name__)`` and emit snake_case events
with keyword fields. ``configure_logging`` is applied with defaults on import
and again by ``create_app`` with the values from ``Settings``.
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Never useful in a log line, masked entirely
_SECRET_KEYS = ("password", "secret", "authorization", "mfa_code", "otp")
# Identifying but handy when correlating, partially masked
_IDENTIFYING_KEYS = ("email", "token")
_MASK = "***"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for the current context, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _partial_mask(value: str) -> str:
    if len(value) <= 4:
        return _MASK
    return value[:2] + _MASK + value[-2:]


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials outright and shorten identifiers such as emails."""
    for key, value in list(event_dict.items()):
        if key == "event" or value is None:
            continue
        lower_key = key.lower()
        if any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = _MASK
        elif isinstance(value, str) and any(part in lower_key for part in _IDENTIFYING_KEYS):
            event_dict[key] = _partial_mask(value)
    return event_dict


def _level_number(level: str) -> int:
    number = logging.getLevelName((level or "INFO").upper())
    return number if isinstance(number, int) else logging.INFO


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, development_mode: bool = False
) -> None:
    """(Re)configure structlog processors and the minimum level.

    Loggers are not cached on first use, so modules that grabbed a logger at
    import pick up a later reconfiguration.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_level_number(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
