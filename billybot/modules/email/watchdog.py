"""
Email connection watchdog.

Periodically walks every connected account and re-registers its Gmail watch
or Microsoft subscription when push delivery looks at risk: the expiry is
unknown or close, or nothing has succeeded for a while. Accounts that failed
recently are left alone until the backoff window passes.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from billybot.core.sentry import capture_account_error
from billybot.models.email_account import PROVIDER_GOOGLE, PROVIDER_MICROSOFT, STATUS_CONNECTED, EmailAccount
from billybot.modules.email.gmail_watch import GmailWatchService
from billybot.modules.email.microsoft import MicrosoftSubscriptionService
from billybot.modules.email.repository import EmailAccountRepository
from billybot.modules.email.status import classify_auth_failure, healthy_connection_status

logger = logging.getLogger(__name__)

STALE_WINDOW = timedelta(hours=6)
RENEW_WINDOW = timedelta(hours=24)
RECOVERY_BACKOFF = timedelta(minutes=30)

ACTION_RECOVER = "recover"
ACTION_GMAIL_REWATCH = "gmail_rewatch"
ACTION_MS_RESUBSCRIBE = "ms_resubscribe"


@dataclass
class WatchdogResult:
    account_id: UUID
    provider: str
    action: str
    status: str  # 'recovered' | 'skipped_backoff' | 'failed_auth' | 'failed_transient'


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def in_backoff(account: EmailAccount, now: datetime) -> bool:
    last_error_at = _as_utc(account.last_error_at)
    return last_error_at is not None and now - last_error_at < RECOVERY_BACKOFF


def recovery_action(account: EmailAccount, now: datetime) -> Optional[str]:
    """
    Which recovery to run for the account, or None when it looks healthy.

    A push channel needs renewing when its expiry is unknown or within
    RENEW_WINDOW. It is stale when the last successful sync is older than
    STALE_WINDOW.
    """
    if account.provider == PROVIDER_GOOGLE:
        expires_at, action = account.gmail_watch_expires_at, ACTION_GMAIL_REWATCH
    elif account.provider == PROVIDER_MICROSOFT:
        expires_at, action = account.ms_subscription_expires_at, ACTION_MS_RESUBSCRIBE
    else:
        return None

    expires_at = _as_utc(expires_at)
    needs_renew = expires_at is None or expires_at <= now + RENEW_WINDOW

    last_success_at = _as_utc(account.last_success_at)
    stale = last_success_at is not None and last_success_at <= now - STALE_WINDOW

    return action if needs_renew or stale else None


class EmailWatchdog:
    """
    Recovers connected accounts whose push notifications may have lapsed.

    Usage:
        watchdog = EmailWatchdog(repository, gmail_watch, microsoft)
        results = await watchdog.run()
    """

    def __init__(
        self,
        repository: EmailAccountRepository,
        gmail_watch: GmailWatchService,
        microsoft: MicrosoftSubscriptionService,
    ):
        self.repository = repository
        self.gmail_watch = gmail_watch
        self.microsoft = microsoft

    async def _recover(self, account: EmailAccount, now: datetime) -> Optional[WatchdogResult]:
        if in_backoff(account, now):
            return WatchdogResult(account.id, account.provider, ACTION_RECOVER, "skipped_backoff")

        action = recovery_action(account, now)
        if action is None:
            return None

        try:
            if action == ACTION_GMAIL_REWATCH:
                await self.gmail_watch.start_watch(account, force=True)
            else:
                await self.microsoft.ensure_subscription(account, force=True)

            await self.repository.mark_account_status(
                account.id,
                STATUS_CONNECTED,
                last_error=None,
                connection_status=healthy_connection_status(account.refresh_token_enc),
            )
        except Exception as e:
            message = str(e) or "Unknown watchdog recovery error"
            auth_status = classify_auth_failure(message)

            logger.warning(
                f"Watchdog recovery failed for account {account.id}: {message}",
                extra={"account_id": str(account.id), "provider": account.provider},
            )
            capture_account_error(e, {"account_id": str(account.id), "task": "run_email_watchdog"})

            try:
                await self.repository.mark_account_status(
                    account.id,
                    STATUS_CONNECTED,
                    last_error=message,
                    connection_status=auth_status,
                )
            except Exception:
                logger.exception(
                    f"Failed to record watchdog error for account {account.id}",
                    extra={"account_id": str(account.id)},
                )
            status = "failed_auth" if auth_status else "failed_transient"
            return WatchdogResult(account.id, account.provider, ACTION_RECOVER, status)

        logger.info(
            f"Watchdog recovered account {account.id} ({action})",
            extra={"account_id": str(account.id), "provider": account.provider},
        )
        return WatchdogResult(account.id, account.provider, action, "recovered")

    async def run(self, now: Optional[datetime] = None) -> list[WatchdogResult]:
        """
        Check every connected account once.

        Healthy accounts produce no result. Each account is handled in its
        own task, so one failure never affects another.
        """
        now = now or datetime.now(timezone.utc)
        accounts = await self.repository.list_connected()

        results = await asyncio.gather(*(self._recover(account, now) for account in accounts))
        results = [result for result in results if result is not None]

        logger.info(
            f"Watchdog checked {len(accounts)} accounts, {len(results)} needed attention",
            extra={"checked": len(accounts), "acted": len(results)},
        )
        return results
