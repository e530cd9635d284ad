"""Sentry initialization and configuration."""

import os
from typing import Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.logging import LoggingIntegration

from conveyor import __version__
from conveyor.config import Settings
from conveyor.errors import DeploymentCancelled

logger = structlog.get_logger(__name__)


def _before_send(event: dict, hint: dict) -> Optional[dict]:
    """
    Drop events for cancelled deployments.

    A cancellation is a user action, not a fault worth alerting on.
    """
    if "exc_info" in hint:
        exc_type, exc_value, tb = hint["exc_info"]
        if isinstance(exc_value, DeploymentCancelled):
            return None

    return event


def init_sentry(settings: Settings) -> bool:
    """
    Initialize Sentry if DSN is configured.

    Returns True if Sentry was initialized, False otherwise.
    """
    if not settings.sentry_dsn:
        return False

    # Only send ERROR-level logs as Sentry events
    sentry_logging = LoggingIntegration(
        level=None,
        event_level="ERROR",
    )

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        release=os.environ.get("GIT_SHA", f"conveyor@{__version__}"),
        integrations=[sentry_logging],
        traces_sample_rate=settings.sentry_traces_sample_rate,
        send_default_pii=False,
        attach_stacktrace=True,
        before_send=_before_send,
    )

    sentry_sdk.set_tag("service", "conveyor-worker")

    logger.info(
        "sentry_initialized",
        environment=settings.sentry_environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )

    return True
