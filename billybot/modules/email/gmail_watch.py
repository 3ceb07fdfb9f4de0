"""
Gmail Push Notifications (Watch) management.

Handles:
- Registering Gmail watch requests (push notifications via Pub/Sub)
- Writing back the returned historyId / expiry only when it changed
- Forced re-registration for the OAuth callback and the watchdog

CRITICAL: Gmail watches expire after 7 days and must be renewed.

References:
- https://developers.google.com/gmail/api/guides/push
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from billybot.core.config import Settings
from billybot.core.exceptions import ConfigurationError, GmailWatchError
from billybot.models.email_account import EmailAccount
from billybot.modules.email.repository import EmailAccountRepository
from billybot.modules.email.tokens import TokenManager

logger = logging.getLogger(__name__)


def build_gmail_service(access_token: str):
    """Authenticated Gmail API service. WARNING: never log the token."""
    credentials = Credentials(token=access_token)
    return build("gmail", "v1", credentials=credentials, cache_discovery=False)


@dataclass
class WatchResult:
    history_id: Optional[str]
    expires_at: Optional[datetime]


class GmailWatchService:
    """
    Registers Gmail watches for connected Google accounts.

    Usage:
        service = GmailWatchService(settings, repository, token_manager)
        updated = await service.register_watches(google_accounts)
    """

    def __init__(
        self,
        settings: Settings,
        repository: EmailAccountRepository,
        token_manager: TokenManager,
        service_builder: Callable = build_gmail_service,
    ):
        self.settings = settings
        self.repository = repository
        self.token_manager = token_manager
        self._build_service = service_builder

    async def _watch(self, account: EmailAccount) -> WatchResult:
        topic_name = self.settings.GOOGLE_PUBSUB_TOPIC
        if not topic_name:
            raise ConfigurationError("GOOGLE_PUBSUB_TOPIC is required")

        access_token = await self.token_manager.get_valid_access_token(account)
        service = self._build_service(access_token)
        request = service.users().watch(
            userId="me",
            body={"topicName": topic_name, "labelIds": ["INBOX"]},
        )

        try:
            response = await asyncio.to_thread(request.execute)
        except HttpError as e:
            logger.error(
                f"Gmail API error registering watch for account {account.id}: "
                f"{e.status_code} {e.reason}",
                extra={"account_id": str(account.id)},
            )
            raise GmailWatchError(f"Failed to start Gmail watch: {e.status_code} {e.reason}")

        expiration_ms = response.get("expiration")
        expires_at = (
            datetime.fromtimestamp(int(expiration_ms) / 1000, tz=timezone.utc)
            if expiration_ms
            else None
        )
        return WatchResult(history_id=response.get("historyId"), expires_at=expires_at)

    async def start_watch(self, account: EmailAccount, force: bool = False) -> Optional[str]:
        """
        Register a watch for one account.

        Without force, the row is written only when the provider returns a
        historyId different from the stored one. With force, the new watch
        expiry is always written.

        Returns:
            The current history id (provider's, else the stored one)
        """
        watch = await self._watch(account)
        history_changed = bool(watch.history_id) and watch.history_id != account.gmail_history_id

        changes = {}
        if history_changed or force:
            if watch.history_id:
                changes["gmail_history_id"] = watch.history_id
            if watch.expires_at:
                changes["gmail_watch_expires_at"] = watch.expires_at

        if changes:
            changes["last_success_at"] = datetime.now(timezone.utc)
            await self.repository.update_fields(account.id, **changes)
            for field, value in changes.items():
                setattr(account, field, value)
            logger.info(
                f"Gmail watch registered for account {account.id} "
                f"(expires: {watch.expires_at.isoformat() if watch.expires_at else 'unknown'})",
                extra={"account_id": str(account.id)},
            )

        return watch.history_id or account.gmail_history_id

    async def register_watches(self, accounts: list[EmailAccount]) -> list[dict]:
        """
        Register watches for the given Google accounts.

        Accounts are processed concurrently. A failing account is logged,
        its error recorded, and it is left out of the result.

        Returns:
            [{"id", "email_address", "gmail_history_id"}, ...]
        """
        async def _register(account: EmailAccount) -> Optional[dict]:
            try:
                history_id = await self.start_watch(account)
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error(
                    f"Failed to register Gmail watch for account {account.id}: {e}",
                    extra={"account_id": str(account.id), "error": str(e)},
                )
                await self.repository.mark_account_status(
                    account.id, account.status, last_error=str(e)
                )
                return None

            return {
                "id": account.id,
                "email_address": account.email_address,
                "gmail_history_id": history_id,
            }

        results = await asyncio.gather(*(_register(account) for account in accounts))
        return [result for result in results if result is not None]
