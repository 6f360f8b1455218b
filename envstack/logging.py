"""
Structured Logging for envstack

Configures structlog on top of the standard library. Every plan or apply of
an environment runs inside :func:`run_context`, which binds the environment
and a short correlation id to all events emitted during the run, including
events from executor worker threads. Output goes to stderr so command results
on stdout stay scriptable.
"""

import logging
import sys
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, get_contextvars, merge_contextvars, reset_contextvars

from .config import LoggingConfig, get_config
from .errors import ConfigurationError


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def current_correlation_id() -> Optional[str]:
    """Correlation id of the run active in this context, if any."""
    return get_contextvars().get("correlation_id")


@contextmanager
def run_context(environment: str, correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind ``environment`` and a correlation id to every event logged inside the block.

    Nested runs for the same environment reuse the outer correlation id.
    """
    bound = get_contextvars()
    if correlation_id is None and bound.get("environment") == environment:
        correlation_id = bound.get("correlation_id")
    correlation_id = correlation_id or new_correlation_id()

    tokens = bind_contextvars(environment=environment, correlation_id=correlation_id)
    try:
        yield correlation_id
    finally:
        reset_contextvars(**tokens)


def setup_logging():
    """Setup structured logging for envstack."""
    try:
        logging_config = get_config().logging
    except ConfigurationError:
        # Reported to the user by the next get_config() call.
        logging_config = LoggingConfig()
    json_output = logging_config.log_format == "json"

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    envstack_logger = logging.getLogger("envstack")
    envstack_logger.setLevel(getattr(logging, logging_config.log_level))
    envstack_logger.propagate = False

    for handler in envstack_logger.handlers[:]:
        envstack_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    envstack_logger.addHandler(handler)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


setup_logging()
