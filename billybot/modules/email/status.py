"""
Email connection status derivation.

ConnectionStatus is computed on read from stored account fields and the
text of the last provider error. The error-text rules are string matches
against Google/Microsoft messages, which neither vendor documents, so they
are kept in versioned tables and applied exactly as written.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from billybot.models.email_account import (
    PROVIDER_GOOGLE,
    PROVIDER_MICROSOFT,
    STATUS_CONNECTED,
    STATUS_DISCONNECTED,
)


class ConnectionStatus(str, Enum):
    OK = "ok"
    NEEDS_RECONNECT = "needs_reconnect"
    WATCH_EXPIRED = "watch_expired"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    REFRESH_FAILED = "refresh_failed"
    PROVIDER_REVOKED = "provider_revoked"
    INACTIVE = "inactive"


ERROR_PATTERNS_VERSION = 1

# Checked in order against the lowercased last_error; first match wins.
ERROR_PATTERNS: tuple[tuple[re.Pattern, ConnectionStatus], ...] = (
    (re.compile(r"revoked|invalid_grant"), ConnectionStatus.PROVIDER_REVOKED),
    (re.compile(r"interaction_required|consent_required"), ConnectionStatus.NEEDS_RECONNECT),
    (
        re.compile(r"refresh token|token refresh failed|missing refresh token|invalid refresh token"),
        ConnectionStatus.REFRESH_FAILED,
    ),
)

# Used when a recovery/renewal call fails: decides whether the failure is an
# auth problem worth caching for display, or transient (None).
AUTH_FAILURE_PATTERNS: tuple[tuple[re.Pattern, ConnectionStatus], ...] = (
    (re.compile(r"revoked|invalid_grant"), ConnectionStatus.PROVIDER_REVOKED),
    (
        re.compile(r"missing refresh token|invalid refresh token|refresh token|token refresh failed"),
        ConnectionStatus.REFRESH_FAILED,
    ),
    (
        re.compile(r"interaction_required|consent_required|unauthorized|invalid_token"),
        ConnectionStatus.NEEDS_RECONNECT,
    ),
)


def _match(patterns, message: Optional[str]) -> Optional[ConnectionStatus]:
    if not message:
        return None

    lowered = message.lower()
    for pattern, status in patterns:
        if pattern.search(lowered):
            return status
    return None


def _is_past(value: Optional[datetime], now: datetime) -> bool:
    if value is None:
        return False
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value <= now


def classify_connection_status(account, now: Optional[datetime] = None) -> ConnectionStatus:
    """
    Derive the connection health of an email account.

    Rules are evaluated in strict priority order because several can hold
    at once (e.g. a revoked grant on an account whose watch also lapsed).

    Args:
        account: EmailAccount (or any object with the same attributes)
        now: Reference time, defaults to the current UTC time

    Returns:
        ConnectionStatus
    """
    now = now or datetime.now(timezone.utc)

    if account.status == STATUS_DISCONNECTED:
        return ConnectionStatus.INACTIVE

    error_status = _match(ERROR_PATTERNS, account.last_error)
    if error_status is not None:
        return error_status

    if not account.refresh_token_enc and account.status == STATUS_CONNECTED:
        return ConnectionStatus.NEEDS_RECONNECT

    if account.provider == PROVIDER_GOOGLE and _is_past(account.gmail_watch_expires_at, now):
        return ConnectionStatus.WATCH_EXPIRED

    if account.provider == PROVIDER_MICROSOFT and _is_past(account.ms_subscription_expires_at, now):
        return ConnectionStatus.SUBSCRIPTION_EXPIRED

    return ConnectionStatus.OK if account.status == STATUS_CONNECTED else ConnectionStatus.INACTIVE


def classify_auth_failure(message: Optional[str]) -> Optional[ConnectionStatus]:
    """Map a failed provider call's message to a cacheable status, or None if transient."""
    return _match(AUTH_FAILURE_PATTERNS, message)


def healthy_connection_status(refresh_token_enc: Optional[str]) -> ConnectionStatus:
    """Status to cache after a successful recovery."""
    return ConnectionStatus.OK if refresh_token_enc else ConnectionStatus.NEEDS_RECONNECT
