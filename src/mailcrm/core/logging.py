"""Structured logging for mailcrm.

Everything logs through structlog. The server renders JSON lines, the CLI
renders for a terminal. Each triage batch, single-email triage and resolver
run gets a run id that is attached to every entry as ``triage_run_id`` and
stored on the LLM log rows written during that run.

Usage:
    from mailcrm.core.logging import get_logger, run_scope

    logger = get_logger(__name__)

    with run_scope() as run_id:
        logger.info("decision_persisted", email_id="abc123", key_point="Respond")
"""

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

RUN_ID_KEY = "triage_run_id"

# Libraries that log every HTTP round trip at INFO or DEBUG
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "msal", "anthropic", "aiosqlite")

_run_id: ContextVar[str | None] = ContextVar("triage_run_id", default=None)


def get_correlation_id() -> str | None:
    return _run_id.get()


@contextmanager
def run_scope(run_id: str | None = None) -> Iterator[str]:
    """Tag everything logged inside the block with one run id.

    A fresh UUID is used when run_id is not given. The previous id is
    restored on exit, so scopes nest.
    """
    run_id = run_id or str(uuid.uuid4())
    token = _run_id.set(run_id)
    try:
        yield run_id
    finally:
        _run_id.reset(token)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Processor: copy the current run id into the entry."""
    run_id = _run_id.get()
    if run_id is not None:
        event_dict.setdefault(RUN_ID_KEY, run_id)
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines for the server; coloured console output otherwise
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if level == logging.DEBUG else logging.WARNING)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_correlation_id,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
