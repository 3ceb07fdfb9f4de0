"""
Sentry initialization and error monitoring configuration.

Captures:
- FastAPI errors
- Celery task failures
- Per-account provider failures from renewal/watchdog batches

OAuth tokens, encrypted token blobs and secrets are redacted before any
event leaves the process.
"""

import logging

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from billybot.core.config import Settings

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = (
    "access_token",
    "refresh_token",
    "access_token_enc",
    "refresh_token_enc",
    "token",
    "password",
    "secret",
    "api_key",
    "encryption_key",
    "authorization",
)


def init_sentry(settings: Settings) -> bool:
    """
    Initialize Sentry error monitoring.

    Only initializes if SENTRY_DSN is configured.

    Returns:
        True if Sentry was initialized
    """
    if not settings.SENTRY_DSN:
        logger.info("Sentry DSN not configured - error monitoring disabled")
        return False

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            CeleryIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR,
            ),
        ],
        traces_sample_rate=0.1 if settings.is_production else 1.0,
        sample_rate=1.0,
        send_default_pii=False,
        max_breadcrumbs=50,
        before_send=filter_sensitive_data,
    )

    logger.info(f"Sentry initialized - environment: {settings.ENVIRONMENT}")
    return True


def _redact(obj):
    if isinstance(obj, dict):
        for key in list(obj.keys()):
            if any(sensitive in str(key).lower() for sensitive in SENSITIVE_KEYS):
                obj[key] = "[REDACTED]"
            else:
                _redact(obj[key])
    elif isinstance(obj, list):
        for item in obj:
            _redact(item)


def filter_sensitive_data(event, hint):
    """
    Filter sensitive data before sending to Sentry.

    Redacts any key that looks like a token, secret or key in the event's
    extra data, contexts and request headers.
    """
    for section in ("extra", "contexts"):
        if event.get(section):
            _redact(event[section])

    request = event.get("request")
    if isinstance(request, dict) and request.get("headers"):
        _redact(request["headers"])

    return event


def capture_account_error(error: Exception, context: dict) -> None:
    """
    Capture a per-account provider failure with account context.

    Example:
        capture_account_error(e, {"account_id": str(account.id), "task": "ms_renew"})
    """
    safe_context = {k: v for k, v in context.items() if "token" not in k.lower()}

    sentry_sdk.capture_exception(error, extras=safe_context)
