"""Sentry setup for the provisioning service.

Only failures the service did not expect are reported: 5xx responses,
crashes in background job execution, and ERROR logs. Outcomes the API
hands back to the caller (preflight rejections, unknown jobs, unconfirmed
rollbacks, throttling) are dropped before they leave the process.
"""

import os
from typing import Any, Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.exceptions import HTTPException

from app import __version__
from app.config import Settings
from app.provisioning.transitions import InvalidTransitionError
from app.services.provisioning.errors import ProvisioningError

logger = structlog.get_logger(__name__)

SERVICE_NAME = "bulk-provisioning"

_CALLER_ERRORS = (ProvisioningError, InvalidTransitionError)

# Trace sample rate by endpoint function name
_ENDPOINT_SAMPLE_RATES = {
    "create_job": 1.0,
    "rollback_job": 1.0,
    "reconcile_job": 1.0,
    "health_check": 0.0,
    "metrics": 0.0,
}


def _is_client_status(status_code: Any) -> bool:
    return isinstance(status_code, int) and 400 <= status_code < 500


def _before_send(event: dict, hint: dict) -> Optional[dict]:
    exc_info = hint.get("exc_info")
    error = exc_info[1] if exc_info else None
    if isinstance(error, _CALLER_ERRORS):
        return None
    # PlatformError also has a status_code, but that one is the platform's
    if isinstance(error, HTTPException) and _is_client_status(error.status_code):
        return None
    response = event.get("contexts", {}).get("response", {})
    if _is_client_status(response.get("status_code")):
        return None
    return event


def _create_traces_sampler(settings: Settings) -> Any:
    """Sampler keyed on the endpoint name (``transaction_style="endpoint"``)."""

    def traces_sampler(sampling_context: dict) -> float:
        name = sampling_context.get("transaction_context", {}).get("name", "")
        rate = _ENDPOINT_SAMPLE_RATES.get(name.rsplit(".", 1)[-1])
        if rate is not None:
            return rate
        parent = sampling_context.get("parent_sampled")
        if parent is not None:
            return float(parent)
        return settings.sentry_traces_sample_rate

    return traces_sampler


def init_sentry(settings: Settings) -> bool:
    """
    Initialize Sentry if DSN is configured.

    Returns True if Sentry was initialized, False otherwise.
    """
    if not settings.sentry_dsn:
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        release=os.environ.get("GIT_SHA", f"{SERVICE_NAME}@{__version__}"),
        integrations=[
            LoggingIntegration(level=None, event_level="ERROR"),
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        enable_tracing=True,
        traces_sampler=_create_traces_sampler(settings),
        profiles_sample_rate=settings.sentry_profiles_sample_rate,
        send_default_pii=False,
        attach_stacktrace=True,
        before_send=_before_send,
    )

    for key, value in {
        "service": SERVICE_NAME,
        "platform_api_version": settings.platform_api_version,
        "retry_budget": settings.job_retry_budget,
        "queue_worker": settings.queue_worker_enabled,
    }.items():
        sentry_sdk.set_tag(key, value)

    logger.info(
        "sentry_initialized",
        environment=settings.sentry_environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )
    return True
