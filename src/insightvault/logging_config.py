"""Centralized structlog configuration.

Configure once at the entry point (CLI or API server), not per module.
Modules obtain loggers with ``structlog.get_logger(__name__)``.
"""

import logging
import os
import sys

import structlog

_CONFIGURED = False


def configure_logging(level: str | int | None = None, json_output: bool | None = None) -> None:
    """Configure stdlib logging and structlog for the whole application.

    Idempotent: calling it again after the first successful call is a no-op.

    Args:
        level: Log level name or number (default: IV_LOG_LEVEL or INFO)
        json_output: Render JSON lines instead of console output
            (default: IV_LOG_JSON)
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    if level is None:
        level = os.environ.get("IV_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    if json_output is None:
        json_output = os.environ.get("IV_LOG_JSON", "").lower() in ("1", "true", "yes")

    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )

    # Reduce noise
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _CONFIGURED = True
