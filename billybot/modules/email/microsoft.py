"""
Microsoft Graph change-notification subscriptions.

Handles:
- Creating inbox subscriptions (POST /subscriptions)
- Extending them before expiry (PATCH /subscriptions/{id})
- Recreating a subscription Graph no longer knows about (404/410)
- The batch renewal job behind POST /api/email/microsoft/renew
- Trusting change notifications posted to /api/email/microsoft/notify

Graph subscriptions for mail resources live at most ~3 days, so they are
requested for 2 days and renewed once they are within 12 hours of expiry.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import httpx
from dateutil.parser import isoparse

from billybot.core.config import Settings
from billybot.core.exceptions import GraphRequestError
from billybot.core.sentry import capture_account_error
from billybot.models.email_account import STATUS_CONNECTED, EmailAccount
from billybot.modules.email.repository import EmailAccountRepository
from billybot.modules.email.status import classify_auth_failure
from billybot.modules.email.tokens import TokenManager

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
INBOX_RESOURCE = "me/mailFolders('Inbox')/messages"
SUBSCRIPTION_TTL = timedelta(days=2)
RENEWAL_LEAD_TIME = timedelta(hours=12)

RENEWED = "renewed"
RECREATED = "recreated"
ERROR = "error"


@dataclass
class SubscriptionInfo:
    id: str
    expires_at: datetime


@dataclass
class RenewalResult:
    account_id: UUID
    status: str  # 'renewed' | 'recreated' | 'error'
    error: Optional[str] = None


@dataclass
class RenewalReport:
    results: list[RenewalResult] = field(default_factory=list)

    @property
    def summary(self) -> dict:
        return {
            "total": len(self.results),
            "renewed": sum(1 for r in self.results if r.status == RENEWED),
            "recreated": sum(1 for r in self.results if r.status == RECREATED),
            "failed": sum(1 for r in self.results if r.status == ERROR),
        }


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_graph_datetime(value: Optional[str], fallback: datetime) -> datetime:
    if not value:
        return fallback
    return _as_utc(isoparse(value))


def graph_request_error(response: httpx.Response) -> GraphRequestError:
    """GraphRequestError for a non-2xx Graph response, with the Graph error code when present."""
    message = f"Microsoft Graph request failed ({response.status_code})"
    try:
        code = response.json().get("error", {}).get("code")
    except (ValueError, AttributeError):
        code = None
    if code:
        message = f"{message}: {code}"
    return GraphRequestError(message, status_code=response.status_code)


class MicrosoftSubscriptionService:
    """
    Keeps Microsoft Graph inbox subscriptions alive.

    Usage:
        service = MicrosoftSubscriptionService(settings, repository, token_manager, http_client)
        report = await service.renew_due_subscriptions()
        report.summary  # {"total": 3, "renewed": 2, "recreated": 0, "failed": 1}
    """

    def __init__(
        self,
        settings: Settings,
        repository: EmailAccountRepository,
        token_manager: TokenManager,
        http_client: httpx.AsyncClient,
    ):
        self.settings = settings
        self.repository = repository
        self.token_manager = token_manager
        self.http = http_client

    async def _graph(self, access_token: str, method: str, path: str, payload: Optional[dict] = None) -> dict:
        response = await self.http.request(
            method,
            f"{GRAPH_BASE_URL}{path}",
            json=payload,
            headers={"Authorization": f"Bearer {access_token}"},
        )

        if not response.is_success:
            raise graph_request_error(response)

        return response.json() if response.content else {}

    async def _record_failure(self, account: EmailAccount, error: Exception) -> None:
        message = str(error) or "Microsoft subscription error"
        await self.repository.mark_account_status(
            account.id,
            account.status or STATUS_CONNECTED,
            last_error=message,
            connection_status=classify_auth_failure(message),
        )

    async def _store_subscription(self, account: EmailAccount, info: SubscriptionInfo) -> None:
        changes = {
            "ms_subscription_id": info.id,
            "ms_subscription_expires_at": info.expires_at,
            "status": STATUS_CONNECTED,
            "last_error": None,
            "last_error_at": None,
            "last_success_at": datetime.now(timezone.utc),
        }
        await self.repository.update_fields(account.id, **changes)
        for name, value in changes.items():
            setattr(account, name, value)

    async def ensure_subscription(self, account: EmailAccount, force: bool = False) -> SubscriptionInfo:
        """
        Make sure the account has a live subscription, creating one if needed.

        An existing subscription that has not yet expired is returned as is
        unless force is set.
        """
        now = datetime.now(timezone.utc)
        expires_at = _as_utc(account.ms_subscription_expires_at)

        if not force and account.ms_subscription_id and expires_at and expires_at > now:
            return SubscriptionInfo(id=account.ms_subscription_id, expires_at=expires_at)

        try:
            access_token = await self.token_manager.get_valid_access_token(account)
            requested_expiry = now + SUBSCRIPTION_TTL

            body = {
                "changeType": "created",
                "notificationUrl": self.settings.app_url("/api/email/microsoft/notify"),
                "resource": INBOX_RESOURCE,
                "expirationDateTime": requested_expiry.isoformat(),
            }
            if self.settings.MICROSOFT_CLIENT_STATE_TOKEN:
                body["clientState"] = self.settings.MICROSOFT_CLIENT_STATE_TOKEN

            data = await self._graph(access_token, "POST", "/subscriptions", body)
            if not data.get("id"):
                raise GraphRequestError("Microsoft subscription response missing id")

            info = SubscriptionInfo(
                id=data["id"],
                expires_at=_parse_graph_datetime(data.get("expirationDateTime"), requested_expiry),
            )
            await self._store_subscription(account, info)
        except Exception as e:
            await self._record_failure(account, e)
            raise

        logger.info(
            f"Microsoft subscription created for account {account.id}",
            extra={"account_id": str(account.id), "subscription_id": info.id},
        )
        return info

    async def renew_subscription(self, account: EmailAccount) -> SubscriptionInfo:
        """
        Extend the account's subscription, or recreate it if Graph dropped it.

        Returns:
            SubscriptionInfo; its id differs from the stored one when recreated
        """
        if not account.ms_subscription_id:
            return await self.ensure_subscription(account)

        requested_expiry = datetime.now(timezone.utc) + SUBSCRIPTION_TTL
        try:
            access_token = await self.token_manager.get_valid_access_token(account)
            data = await self._graph(
                access_token,
                "PATCH",
                f"/subscriptions/{account.ms_subscription_id}",
                {"expirationDateTime": requested_expiry.isoformat()},
            )
        except GraphRequestError as e:
            if e.status_code in (404, 410):
                logger.warning(
                    f"Microsoft subscription expired for account {account.id}; recreating",
                    extra={
                        "account_id": str(account.id),
                        "subscription_id": account.ms_subscription_id,
                    },
                )
                await self.repository.update_fields(
                    account.id, ms_subscription_id=None, ms_subscription_expires_at=None
                )
                account.ms_subscription_id = None
                account.ms_subscription_expires_at = None
                return await self.ensure_subscription(account, force=True)

            await self._record_failure(account, e)
            raise
        except Exception as e:
            await self._record_failure(account, e)
            raise

        info = SubscriptionInfo(
            id=account.ms_subscription_id,
            expires_at=_parse_graph_datetime(data.get("expirationDateTime"), requested_expiry),
        )
        await self._store_subscription(account, info)

        logger.info(
            f"Microsoft subscription renewed for account {account.id}",
            extra={"account_id": str(account.id), "subscription_id": info.id},
        )
        return info

    async def _renew_one(self, account: EmailAccount) -> RenewalResult:
        previous_id = account.ms_subscription_id
        try:
            info = await self.renew_subscription(account)
        except Exception as e:
            logger.error(
                f"Failed to renew Microsoft subscription for account {account.id}: {e}",
                extra={"account_id": str(account.id), "error_type": type(e).__name__},
            )
            capture_account_error(e, {"account_id": str(account.id), "task": "renew_microsoft_subscriptions"})
            return RenewalResult(account_id=account.id, status=ERROR, error=str(e))

        status = RENEWED if info.id == previous_id else RECREATED
        return RenewalResult(account_id=account.id, status=status)

    async def renew_due_subscriptions(self, now: Optional[datetime] = None) -> RenewalReport:
        """
        Renew every Microsoft subscription expiring within the lead time.

        Accounts are renewed concurrently; each failure is returned as an
        'error' result and never stops the others.
        """
        now = now or datetime.now(timezone.utc)
        accounts = await self.repository.list_microsoft_due_for_renewal(now + RENEWAL_LEAD_TIME)

        logger.info(f"Found {len(accounts)} Microsoft subscriptions due for renewal")

        results = await asyncio.gather(*(self._renew_one(account) for account in accounts))
        report = RenewalReport(results=list(results))

        summary = report.summary
        logger.info(
            f"Microsoft renewal complete: {summary['renewed']} renewed, "
            f"{summary['recreated']} recreated, {summary['failed']} failed",
            extra=summary,
        )
        return report


def client_state_matches(client_state: Optional[str], expected: Optional[str]) -> bool:
    """Notifications are trusted as-is when no client state token is configured."""
    if not expected:
        return True
    if not client_state:
        return False
    return secrets.compare_digest(client_state.encode(), expected.encode())


@dataclass
class NotificationReport:
    received: int = 0
    accepted: int = 0
    rejected: int = 0
    unmatched: int = 0
    failed: int = 0


async def record_notifications(
    repository: EmailAccountRepository,
    notifications: list,
    expected_client_state: Optional[str],
) -> NotificationReport:
    """
    Record Graph change notifications against their subscribed accounts.

    A trusted notification stamps last_success_at on the account that owns
    the subscription, so the watchdog sees its push channel as alive. Each
    account is written at most once per batch. Message content is not
    fetched here.

    Args:
        repository: Account repository
        notifications: Parsed notifications (subscription_id, client_state)
        expected_client_state: MICROSOFT_CLIENT_STATE_TOKEN

    Returns:
        NotificationReport with per-outcome counts
    """
    report = NotificationReport(received=len(notifications))
    now = datetime.now(timezone.utc)
    seen = set()

    for notification in notifications:
        if not client_state_matches(notification.client_state, expected_client_state):
            report.rejected += 1
            continue

        subscription_id = notification.subscription_id
        if not subscription_id:
            report.unmatched += 1
            continue

        if subscription_id in seen:
            report.accepted += 1
            continue

        try:
            account = await repository.get_by_subscription_id(subscription_id)
            if account is None:
                report.unmatched += 1
                continue
            await repository.update_fields(account.id, last_success_at=now)
        except Exception as e:
            report.failed += 1
            logger.error(
                f"Failed to record Microsoft notification for subscription {subscription_id}: {e}",
                extra={"subscription_id": subscription_id, "error_type": type(e).__name__},
            )
            capture_account_error(e, {"subscription_id": subscription_id, "task": "microsoft_notify"})
            continue

        seen.add(subscription_id)
        report.accepted += 1

    if report.rejected:
        logger.warning(
            f"Rejected {report.rejected} Microsoft notifications with a mismatched clientState",
            extra={"rejected": report.rejected},
        )

    return report
