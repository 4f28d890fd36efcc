"""structlog setup shared by the API server, the CLI and the sweep scheduler.

Server output is JSON lines on stdout; the CLI uses the console renderer.
A sweep binds its sweep_id into structlog's contextvars, so every line
logged while that sweep reconciles users carries the same id.

Usage:
    from inboxzero.core.logging import get_logger, set_correlation_id

    logger = get_logger(__name__)
    set_correlation_id(sweep_id)
    logger.info("deferrals_reconciled", user_id="u1", count=3)
"""

import logging
import sys

import structlog

CORRELATION_KEY = "sweep_id"

# Per-job INFO lines from these drown out the sweep summary
_NOISY_LOGGERS = ("apscheduler", "msal", "urllib3", "httpx", "aiosqlite")


def set_correlation_id(correlation_id: str | None) -> None:
    """Bind (or with None, unbind) the sweep id for the current context."""
    if correlation_id is None:
        structlog.contextvars.unbind_contextvars(CORRELATION_KEY)
    else:
        structlog.contextvars.bind_contextvars(**{CORRELATION_KEY: correlation_id})


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Route stdlib logging and structlog through one renderer.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines for the server; False for the CLI console
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
        tail: list[structlog.types.Processor] = [structlog.processors.dict_tracebacks]
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        tail = []

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            *tail,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
