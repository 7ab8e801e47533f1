"""Sentry initialization and handler crash capture."""

import os
from typing import Optional
from uuid import UUID

import sentry_sdk
import structlog
from sentry_sdk.integrations.logging import LoggingIntegration

from jobq import __version__
from jobq.config import Settings

logger = structlog.get_logger(__name__)

_enabled = False


def _before_send(event: dict, hint: dict) -> Optional[dict]:
    """
    Drop handler-declared permanent errors.

    Those are domain outcomes (bad payloads), not crashes worth an alert.
    """
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]
        # Imported lazily to keep this module free of engine imports
        from jobq.jobs.errors import PermanentJobError

        if isinstance(exc_value, PermanentJobError):
            return None
    return event


def init_sentry(settings: Settings) -> bool:
    """
    Initialize Sentry if DSN is configured.

    Returns True if Sentry was initialized, False otherwise.
    """
    global _enabled
    if not settings.sentry_dsn:
        return False

    sentry_logging = LoggingIntegration(
        level=None,  # Keep normal log levels
        event_level="ERROR",  # Only ERROR+ become Sentry events
    )

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        release=os.environ.get("GIT_SHA", f"jobq@{__version__}"),
        integrations=[sentry_logging],
        send_default_pii=False,
        attach_stacktrace=True,
        before_send=_before_send,
    )
    sentry_sdk.set_tag("service", "jobq-worker")
    _enabled = True

    logger.info("Sentry initialized", environment=settings.sentry_environment)
    return True


def capture_handler_exception(
    error: BaseException, job_id: UUID, queue: str, attempt: int
) -> None:
    """Report a handler crash with job tags. No-op when Sentry is off."""
    if not _enabled:
        return
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("queue", queue)
        scope.set_tag("job_id", str(job_id))
        scope.set_extra("attempt", attempt)
        sentry_sdk.capture_exception(error)
