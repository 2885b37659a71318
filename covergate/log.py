"""
Logging setup.

structlog rendering through the stdlib logging handler on stderr, so log
output never mixes with command results on stdout.
"""

import logging
import os
import sys

import structlog


LOG_LEVEL_ENV = "COVERGATE_LOG_LEVEL"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def resolve_level(verbose: bool = False) -> int:
    """Log level: DEBUG when verbose, else COVERGATE_LOG_LEVEL, else WARNING."""
    if verbose:
        return logging.DEBUG
    return _LEVELS.get(os.environ.get(LOG_LEVEL_ENV, "").strip().lower(), logging.WARNING)


def setup_logging(verbose: bool = False) -> None:
    """Configure structlog and the stdlib root logger."""
    level = resolve_level(verbose)
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        format="%(message)s",
        level=level,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
