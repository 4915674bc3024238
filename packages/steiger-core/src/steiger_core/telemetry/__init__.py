"""Logging and tracing helpers."""

from __future__ import annotations

from steiger_core.telemetry.logging import add_trace_context, configure_logging

__all__ = ["add_trace_context", "configure_logging"]
