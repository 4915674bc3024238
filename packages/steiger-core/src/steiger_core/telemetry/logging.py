"""Structured logging configuration with trace correlation.

All steiger modules log through ``structlog.get_logger(__name__)`` with
snake_case event names. ``configure_logging`` installs the processor chain
once per process (the CLI calls it before doing anything else): level
filtering, ISO timestamps, OpenTelemetry trace/span ids when a span is
active, and either JSON or console rendering on stderr.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import INVALID_SPAN_ID, INVALID_TRACE_ID

EventDict = MutableMapping[str, Any]

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def add_trace_context(
    logger: Any,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Add the active span's trace_id and span_id to a log event.

    Args:
        logger: The logger instance (unused, required by structlog processor API).
        method_name: The log method name (unused).
        event_dict: The event dictionary to enrich.

    Returns:
        The event dictionary, with trace context if a span is active.
    """
    ctx = trace.get_current_span().get_span_context()
    if ctx.trace_id != INVALID_TRACE_ID and ctx.span_id != INVALID_SPAN_ID:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """Configure structlog for the process.

    Args:
        log_level: Minimum level to emit (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: Render JSON lines instead of human-readable console output.

    Raises:
        ValueError: If the log level is unknown.

    Examples:
        >>> configure_logging(log_level="DEBUG", json_output=True)
        >>> structlog.get_logger().info("configured")
    """
    level_name = log_level.upper()
    if level_name not in LOG_LEVELS:
        raise ValueError(f"unknown log level: {log_level}")
    level = logging.getLevelName(level_name)

    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_trace_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


__all__ = ["LOG_LEVELS", "add_trace_context", "configure_logging"]
