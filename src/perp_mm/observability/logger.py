"""Structured logging with cycle_id support.

Modules log through stdlib ``logging.getLogger(__name__)``. ``setup_logging``
routes those records through structlog's ``ProcessorFormatter`` so every
line is rendered as JSON (or console output) with an ISO timestamp, the
logger name, the ``extra=`` fields and the id of the quoting cycle that
emitted it.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

# Context var for cycle_id propagation
_cycle_id: ContextVar[str] = ContextVar("cycle_id", default="")

# LogRecord attributes that are not user-supplied ``extra=`` fields
_RESERVED = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


def get_cycle_id() -> str:
    return _cycle_id.get()


def set_cycle_id(cycle_id: str) -> None:
    _cycle_id.set(cycle_id)


def new_cycle_id() -> str:
    """Generate and set a new cycle ID."""
    cid = uuid.uuid4().hex[:12]
    _cycle_id.set(cid)
    return cid


def _add_cycle_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor: add cycle_id when one is set."""
    cid = get_cycle_id()
    if cid:
        event_dict["cycle_id"] = cid
    return event_dict


def _add_extra(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor: lift stdlib ``extra=`` fields into the event."""
    record = event_dict.get("_record")
    if record is not None:
        for key, value in vars(record).items():
            if key not in _RESERVED and not key.startswith("_"):
                event_dict.setdefault(key, value)
    return event_dict


def setup_logging(
    level: str = "INFO",
    format: str = "json",
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        format: "json" for production, "console" for development.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_cycle_id,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: Any
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[_add_extra, *shared, structlog.processors.format_exc_info],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)
