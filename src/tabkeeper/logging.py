"""structlog setup shared by the host daemon and its companion.

Both processes write to stderr, usually into the same terminal or the same
journal. Passing ``process=`` to ``configure_logging`` tags every event with
its origin (``host`` or ``companion``) so the two streams can be told apart
or filtered with ``jq 'select(.process == "companion")'`` under JSON output.
"""

import logging as stdlib_logging
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, WrappedLogger


def add_log_level(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Record the method name as ``level``, spelling ``warn`` as ``warning``."""
    event_dict["level"] = "warning" if method_name == "warn" else method_name
    return event_dict


def _level_number(level: str) -> int:
    # unknown names (typos in TABKEEPER_LOG_LEVEL) degrade to INFO
    return getattr(stdlib_logging, level.upper(), stdlib_logging.INFO)


def configure_logging(
    level: str = "WARNING",
    json_output: bool = False,
    process: str | None = None,
) -> None:
    """Set up structlog for the current tabkeeper process.

    Safe to call more than once; the CLI calls it early with the ``-v`` level
    and again once settings are loaded. Each call replaces the previous
    configuration and any previously bound process tag.

    Args:
        level: Minimum level name, e.g. ``"DEBUG"`` or ``"warning"``.
        json_output: One JSON object per line instead of the colored
            console renderer.
        process: Role tag bound to every event, or None for no tag.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_level_number(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    structlog.contextvars.clear_contextvars()
    if process:
        structlog.contextvars.bind_contextvars(process=process)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Return a structlog logger; modules pass ``__name__``."""
    return structlog.get_logger(name)
