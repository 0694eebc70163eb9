"""Structured logging configuration using structlog."""

import logging
import sys

import structlog


def configure_logging(log_level: str = "info", json_output: bool = False) -> None:
    """Configure structlog as the formatter for all stdlib loggers.

    Modules log through ``logging.getLogger(__name__)``; this routes those
    records through structlog's processor chain.

    Args:
        log_level: Logging level string (debug/info/warning/error).
        json_output: If True, output JSON (production). If False, console (dev).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors + [structlog.processors.format_exc_info],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def bind_workflow_context(
    request_id: str | None = None,
    actor_id: str | None = None,
    facility_id: str | None = None,
) -> None:
    """Bind workflow identifiers so every log line in this context carries them."""
    ctx = {}
    if request_id:
        ctx["request_id"] = request_id
    if actor_id:
        ctx["actor_id"] = actor_id
    if facility_id:
        ctx["facility_id"] = facility_id
    structlog.contextvars.bind_contextvars(**ctx)


def clear_workflow_context() -> None:
    """Clear bound context variables."""
    structlog.contextvars.clear_contextvars()
