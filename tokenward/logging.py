"""Structured logging for token operations.

Every event goes through structlog with a correlation id and two scrubbing
steps: values under sensitive keys are masked, and anything shaped like a
signed token is replaced wherever it appears. Token ids (``jti``) and family
ids are not secrets and are logged as-is so incidents can be traced.
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_SENSITIVE_KEY_PARTS = ("password", "secret", "token", "authorization", "email")
# Counters and type labels whose names happen to contain "token"
_SAFE_KEYS = frozenset({"token_type", "token_count", "tokens_deleted", "tokens_revoked"})
_SIGNED_TOKEN = re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's correlation id, or mint one for this context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


@contextlib.contextmanager
def token_context(**fields: Any) -> Iterator[None]:
    """Attach fields such as ``operation`` to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def redact_value(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


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
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key not in _SAFE_KEYS and any(
            part in lower_key for part in _SENSITIVE_KEY_PARTS
        ):
            event_dict[key] = redact_value(value)
        elif _SIGNED_TOKEN.search(value):
            event_dict[key] = _SIGNED_TOKEN.sub("[signed-token]", value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog for the process.

    Args:
        log_level: Minimum level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render one JSON object per line
        development_mode: Render colored console output instead of JSON
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
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


__all__ = [
    "configure_logging",
    "correlation_id_var",
    "get_correlation_id",
    "get_logger",
    "redact_value",
    "set_correlation_id",
    "token_context",
]
