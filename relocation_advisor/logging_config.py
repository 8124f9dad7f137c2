"""Structured logging for the relocation advisor.

Call :pyfunc:`configure_logging` once at process start (``create_advisor``
does). Output is one JSON object per line unless ``LOG_FORMAT=console`` or
``LOG_PRETTY=1`` is set. Library loggers such as aiohttp and redis are
routed through the same renderer.

Inside :pyfunc:`request_context` every event carries ``query_id`` and
``session_id``, which ties the provider calls of one ``advise()`` run
together.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from typing import Iterator, List, Optional

import structlog

__all__ = [
    "configure_logging",
    "request_context",
    "bind_request_context",
    "clear_request_context",
]

CONTEXT_KEYS = ("query_id", "session_id")

_configured = False


def _use_console() -> bool:
    if os.getenv("LOG_FORMAT", "").strip().lower() == "console":
        return True
    return os.getenv("LOG_PRETTY", "0").lower() in {"1", "true", "yes"}


def _pre_chain() -> List[structlog.types.Processor]:
    # Shared by structlog events and foreign stdlib records
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def configure_logging(force: bool = False) -> None:
    """Install the structlog pipeline and the root handler.

    Args:
        force: Reconfigure even if already done (tests switching renderers).
    """
    global _configured
    if _configured and not force:
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    renderer = (
        structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        if _use_console()
        else structlog.processors.JSONRenderer(sort_keys=True)
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    # Third-party chatter stays at WARNING unless we are debugging
    for noisy in ("aiohttp", "asyncio", "redis"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_pre_chain(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def bind_request_context(
    query_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> None:
    """Bind the given identifiers; ``None`` values are left untouched."""
    values = {k: v for k, v in zip(CONTEXT_KEYS, (query_id, session_id)) if v}
    if values:
        structlog.contextvars.bind_contextvars(**values)


def clear_request_context() -> None:
    structlog.contextvars.unbind_contextvars(*CONTEXT_KEYS)


@contextmanager
def request_context(query_id: str, session_id: Optional[str] = None) -> Iterator[None]:
    """Scope ``query_id``/``session_id`` to the enclosed block."""
    bind_request_context(query_id=query_id, session_id=session_id)
    try:
        yield
    finally:
        clear_request_context()

