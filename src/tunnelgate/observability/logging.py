"""structlog setup.

Debug events are gated on a callable rather than a fixed level so that the
``debug`` flag of the live configuration takes effect on the next reload.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import structlog


def debug_gate(is_debug: Callable[[], bool]) -> Callable[[Any, str, dict[str, Any]], dict[str, Any]]:
    """Build a processor dropping debug events while ``is_debug()`` is false."""

    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        if method_name == "debug" and not is_debug():
            raise structlog.DropEvent
        return event_dict

    return processor


def configure_logging(
    is_debug: Callable[[], bool] = lambda: False,
    log_level: str = "debug",
) -> None:
    """Configure structlog for the server process.

    Args:
        is_debug: Returns whether debug events should currently be emitted.
        log_level: Lowest level ever emitted.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            debug_gate(is_debug),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
    )
