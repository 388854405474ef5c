"""
Sentry configuration for error tracking.

Captures unhandled API exceptions and delivery worker failures. Events are
tagged with the process component; subscriber addresses never leave the
process.
"""
import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from app.config import settings


logger = structlog.get_logger()

REDACTED = "[redacted]"


def configure_sentry(component: str = "api"):
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Requires SENTRY_DSN environment variable to be set.

    Args:
        component: "api" or "worker", sent as a tag on every event
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=strip_recipient,
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )
    sentry_sdk.set_tag("component", component)

    logger.info("sentry_initialized", environment=settings.ENVIRONMENT, component=component)


def strip_recipient(event, hint):
    """Redact subscriber addresses from event extras."""
    extra = event.get("extra")
    if extra and "subscriber_email" in extra:
        extra["subscriber_email"] = REDACTED
    return event


def capture_exception(exc=None, **context):
    """
    Capture an exception to Sentry, with optional extras.

    Usage:
        try:
            # some code
        except SQLAlchemyError as e:
            capture_exception(e, issue_id=issue_id)
    """
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in context.items():
            scope.set_extra(key, value)
        scope.capture_exception(exc)


def capture_message(message, level="info", **context):
    """
    Capture a message to Sentry, with optional extras.

    Usage:
        capture_message("Issue missing", level="error", issue_id=issue_id)
    """
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in context.items():
            scope.set_extra(key, value)
        scope.capture_message(message, level=level)
