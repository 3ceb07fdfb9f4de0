"""
Unit tests for the email connection watchdog.

Tests:
- Backoff after a recent failure
- Recovery triggers (missing/near expiry, stale last success)
- Success and failure bookkeeping (cached status, last_error)
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from billybot.core.exceptions import GmailWatchError, TokenRefreshError
from billybot.models.email_account import STATUS_DISCONNECTED
from billybot.modules.email.watchdog import EmailWatchdog, in_backoff, recovery_action
from tests.conftest import FakeEmailAccountRepository, make_account, make_microsoft_account

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
HEALTHY_EXPIRY = NOW + timedelta(days=3)


def make_watchdog(repository):
    gmail_watch = Mock()
    gmail_watch.start_watch = AsyncMock(return_value="100")
    microsoft = Mock()
    microsoft.ensure_subscription = AsyncMock()
    return EmailWatchdog(repository, gmail_watch, microsoft), gmail_watch, microsoft


class TestRecoveryAction:

    def test_healthy_google_account(self):
        account = make_account(gmail_watch_expires_at=HEALTHY_EXPIRY, last_success_at=NOW)
        assert recovery_action(account, NOW) is None

    def test_missing_watch_expiry(self):
        assert recovery_action(make_account(gmail_watch_expires_at=None), NOW) == "gmail_rewatch"

    def test_watch_expiring_within_a_day(self):
        account = make_account(gmail_watch_expires_at=NOW + timedelta(hours=23))
        assert recovery_action(account, NOW) == "gmail_rewatch"

    def test_stale_last_success(self):
        account = make_account(gmail_watch_expires_at=HEALTHY_EXPIRY, last_success_at=NOW - timedelta(hours=7))
        assert recovery_action(account, NOW) == "gmail_rewatch"

    def test_recent_success_is_not_stale(self):
        account = make_account(gmail_watch_expires_at=HEALTHY_EXPIRY, last_success_at=NOW - timedelta(hours=5))
        assert recovery_action(account, NOW) is None

    def test_microsoft_subscription_expiring(self):
        account = make_microsoft_account(ms_subscription_expires_at=NOW + timedelta(hours=2))
        assert recovery_action(account, NOW) == "ms_resubscribe"

    def test_backoff_window(self):
        assert in_backoff(make_account(last_error_at=NOW - timedelta(minutes=29)), NOW)
        assert not in_backoff(make_account(last_error_at=NOW - timedelta(minutes=31)), NOW)
        assert not in_backoff(make_account(last_error_at=None), NOW)


class TestWatchdogRun:

    @pytest.mark.asyncio
    async def test_recent_failure_is_skipped(self):
        account = make_account(gmail_watch_expires_at=None, last_error="boom", last_error_at=NOW - timedelta(minutes=10))
        repository = FakeEmailAccountRepository([account])
        watchdog, gmail_watch, _ = make_watchdog(repository)

        results = await watchdog.run(now=NOW)

        assert [(r.action, r.status) for r in results] == [("recover", "skipped_backoff")]
        gmail_watch.start_watch.assert_not_awaited()
        assert repository.writes == []

    @pytest.mark.asyncio
    async def test_healthy_accounts_produce_no_result(self):
        account = make_account(gmail_watch_expires_at=HEALTHY_EXPIRY)
        watchdog, gmail_watch, _ = make_watchdog(FakeEmailAccountRepository([account]))

        assert await watchdog.run(now=NOW) == []
        gmail_watch.start_watch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disconnected_accounts_are_ignored(self):
        account = make_account(status=STATUS_DISCONNECTED, gmail_watch_expires_at=None)
        watchdog, gmail_watch, _ = make_watchdog(FakeEmailAccountRepository([account]))

        assert await watchdog.run(now=NOW) == []

    @pytest.mark.asyncio
    async def test_gmail_recovery_clears_error(self):
        account = make_account(
            gmail_watch_expires_at=None, last_error="old", last_error_at=NOW - timedelta(hours=2)
        )
        repository = FakeEmailAccountRepository([account])
        watchdog, gmail_watch, _ = make_watchdog(repository)

        results = await watchdog.run(now=NOW)

        assert [(r.action, r.status) for r in results] == [("gmail_rewatch", "recovered")]
        gmail_watch.start_watch.assert_awaited_once_with(account, force=True)
        assert account.last_error is None
        assert account.last_error_at is None
        assert account.email_connection_status == "ok"

    @pytest.mark.asyncio
    async def test_recovery_without_refresh_token_caches_needs_reconnect(self):
        account = make_microsoft_account(ms_subscription_expires_at=None, refresh_token_enc=None)
        repository = FakeEmailAccountRepository([account])
        watchdog, _, microsoft = make_watchdog(repository)

        results = await watchdog.run(now=NOW)

        assert results[0].action == "ms_resubscribe"
        microsoft.ensure_subscription.assert_awaited_once_with(account, force=True)
        assert account.email_connection_status == "needs_reconnect"

    @pytest.mark.asyncio
    async def test_auth_failure(self):
        account = make_account(gmail_watch_expires_at=None)
        repository = FakeEmailAccountRepository([account])
        watchdog, gmail_watch, _ = make_watchdog(repository)
        gmail_watch.start_watch.side_effect = TokenRefreshError("Google token refresh failed: invalid_grant")

        results = await watchdog.run(now=NOW)

        assert [(r.action, r.status) for r in results] == [("recover", "failed_auth")]
        assert account.email_connection_status == "provider_revoked"
        assert account.last_error == "Google token refresh failed: invalid_grant"
        assert account.last_error_at is not None

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_cached_status(self):
        account = make_account(gmail_watch_expires_at=None, email_connection_status="ok")
        repository = FakeEmailAccountRepository([account])
        watchdog, gmail_watch, _ = make_watchdog(repository)
        gmail_watch.start_watch.side_effect = GmailWatchError("Failed to start Gmail watch: 503 Backend Error")

        results = await watchdog.run(now=NOW)

        assert results[0].status == "failed_transient"
        assert account.email_connection_status == "ok"
        assert account.last_error == "Failed to start Gmail watch: 503 Backend Error"

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self):
        failing = make_account(gmail_watch_expires_at=None)
        healthy = make_microsoft_account(ms_subscription_expires_at=None)
        repository = FakeEmailAccountRepository([failing, healthy])
        watchdog, gmail_watch, _ = make_watchdog(repository)
        gmail_watch.start_watch.side_effect = GmailWatchError("boom")
        repository.fail_writes_for.add(failing.id)

        results = await watchdog.run(now=NOW)

        statuses = {r.account_id: r.status for r in results}
        assert statuses == {failing.id: "failed_transient", healthy.id: "recovered"}
