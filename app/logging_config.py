"""
Structured logging configuration using structlog.

The API and the worker process share one JSON format; every line carries a
`component` field so their output can be told apart once aggregated.
Request- and task-scoped fields travel through structlog contextvars.
"""
import logging
import sys

import structlog

from app.config import settings


def _add_component(component: str):
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("component", component)
        return event_dict
    return processor


def configure_logging(component: str = "api"):
    """
    Configure structlog for JSON output on stdout.

    Args:
        component: "api" or "worker"
    """
    level = logging.DEBUG if settings.DEBUG else logging.INFO

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_component(component),
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(**context):
    """
    Get a logger with additional context bound.

    Usage:
        log = get_logger(issue_id=issue_id, subscriber_email=email)
        log.info("message", extra_field=value)
    """
    return structlog.get_logger().bind(**context)
