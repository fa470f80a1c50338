"""Structured logging setup for pondkit.

Modules log through ``structlog.get_logger(__name__)`` with an event name and
keyword context. Applications call ``configure_logging`` once to choose the
level and the renderer.
"""

from __future__ import annotations

import logging

import structlog


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Configure structlog processors for pondkit log events.

    Args:
        level: Minimum level to emit (DEBUG, INFO, WARNING, ERROR).
        json_output: Render JSON lines instead of the console format.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=False,
    )
