"""structlog configuration for the command line entry point."""

import logging
import sys

import structlog

_CONFIGURED = False


def configure_logging(verbose: bool = False, json_logs: bool = False) -> structlog.stdlib.BoundLogger:
    """Configure structlog once and return the application logger.

    Logs go to stderr so stdout stays free for command output.

    Args:
        verbose: Log at DEBUG instead of INFO
        json_logs: Render JSON lines instead of the console format
    """
    global _CONFIGURED

    if not _CONFIGURED:
        level = logging.DEBUG if verbose else logging.INFO
        logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

        renderer = (
            structlog.processors.JSONRenderer()
            if json_logs
            else structlog.dev.ConsoleRenderer()
        )
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                renderer,
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
            cache_logger_on_first_use=True,
        )
        _CONFIGURED = True

    return structlog.get_logger("event_discovery")
