"""Logging configuration helpers built on Structlog.

Key Responsibilities:
    - Configure standard library logging and Structlog with JSON rendering,
      field scrubbing and personal-data masking
    - Expose helpers for binding correlation identifiers and run identity to
      the current execution context

Thread Safety:
    - ``configure_logging`` should be invoked once during process startup
    - Context helpers rely on ``contextvars`` and are safe for async use; each
      asyncio task gets its own copy of the bound values
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, Callable

import structlog

from ResearchEx.config.settings import LoggingSettings
from ResearchEx.services.masking import SensitiveDataMasker

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def _structlog_scrubber(
    scrub_fields: Iterable[str] | None,
) -> Callable[[Any, str, dict[str, Any]], dict[str, Any]]:
    """Create a processor that redacts configured fields and injects the correlation ID."""
    lower_fields = {field.lower() for field in scrub_fields or ()}

    def processor(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        correlation_id = _correlation_id.get()
        if correlation_id:
            event_dict.setdefault("correlation_id", correlation_id)
        for key in list(event_dict.keys()):
            if key.lower() in lower_fields:
                event_dict[key] = "***"
        return event_dict

    return processor


def _personal_data_masker(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask resident numbers, phone numbers and e-mail addresses in string values."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = SensitiveDataMasker.mask(value)
    return event_dict


def configure_logging(
    level: int | str | None = None,
    *,
    settings: LoggingSettings | None = None,
) -> None:
    """Configure global logging for the application.

    Args:
        level: Optional logging level or level name. Ignored when ``settings``
            is provided.
        settings: Logging settings providing level, scrub fields and renderer.

    Note:
        Calling this function reconfigures the root logger and should therefore
        happen once during application startup.
    """
    scrub_fields: Iterable[str] | None = None
    render_json = True
    if settings is not None:
        level = settings.level
        scrub_fields = settings.scrub_fields
        render_json = settings.json_output

    if isinstance(level, str):
        level_value = getattr(logging, level.upper(), logging.INFO)
    elif isinstance(level, int):
        level_value = level
    else:
        level_value = logging.INFO

    logging.basicConfig(
        level=level_value,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    renderer: Any
    if render_json:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            _structlog_scrubber(scrub_fields),
            _personal_data_masker,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def bind_correlation_id(value: str) -> Token[str | None]:
    """Bind a correlation identifier to the current execution context.

    Returns:
        Context variable token that can be used to restore the previous value.
    """
    token = _correlation_id.set(value)
    structlog.contextvars.bind_contextvars(correlation_id=value)
    return token


def reset_correlation_id(token: Token[str | None] | None) -> None:
    """Reset the correlation identifier context."""
    if token is not None:
        _correlation_id.reset(token)
    structlog.contextvars.unbind_contextvars("correlation_id")


def get_correlation_id() -> str | None:
    """Return the currently bound correlation identifier, if any."""
    return _correlation_id.get()


@contextmanager
def bound_run(*, pipeline: str, tenant_id: str, run_id: str, event_id: str) -> Iterator[None]:
    """Bind run identity to structlog contextvars for the duration of a block."""
    tokens = structlog.contextvars.bind_contextvars(
        pipeline=pipeline,
        tenant_id=tenant_id,
        run_id=run_id,
    )
    correlation_token = bind_correlation_id(event_id)
    try:
        yield
    finally:
        reset_correlation_id(correlation_token)
        structlog.contextvars.reset_contextvars(**tokens)


__all__ = [
    "bind_correlation_id",
    "bound_run",
    "configure_logging",
    "get_correlation_id",
    "reset_correlation_id",
]
