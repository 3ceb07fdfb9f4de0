"""
OAuth access-token lifecycle for connected mailboxes.

Handles:
- Decrypting the stored access token
- Refreshing it shortly before expiry (Google / Microsoft token endpoints)
- Re-encrypting and persisting the refreshed token

CRITICAL SECURITY:
- NEVER log tokens (access_token, refresh_token)
- Refreshed tokens are encrypted before they are written
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from billybot.core.config import Settings
from billybot.core.exceptions import TokenRefreshError
from billybot.core.security import TokenCipher
from billybot.models.email_account import PROVIDER_GOOGLE, EmailAccount
from billybot.modules.email.repository import EmailAccountRepository

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"

# Refresh this long before the stored expiry
REFRESH_BUFFER = timedelta(minutes=2)


def _provider_error_code(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return str(response.status_code)
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return str(response.status_code)


def is_expiring_soon(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at - now <= REFRESH_BUFFER


class TokenManager:
    """
    Hands out valid access tokens, refreshing them when needed.

    Usage:
        manager = TokenManager(settings, cipher, repository, http_client)
        access_token = await manager.get_valid_access_token(account)
    """

    def __init__(
        self,
        settings: Settings,
        cipher: TokenCipher,
        repository: EmailAccountRepository,
        http_client: httpx.AsyncClient,
    ):
        self.settings = settings
        self.cipher = cipher
        self.repository = repository
        self.http = http_client

    async def get_valid_access_token(self, account: EmailAccount) -> str:
        """
        Return a usable access token for the account.

        Raises:
            TokenRefreshError: Token missing or provider refused the refresh
            TokenCipherError: Stored token cannot be decrypted
        """
        if not account.access_token_enc:
            raise TokenRefreshError("Missing access token")

        access_token = self.cipher.decrypt(account.access_token_enc)
        if not is_expiring_soon(account.expires_at):
            return access_token

        if not account.refresh_token_enc:
            raise TokenRefreshError("Missing refresh token")

        refresh_token = self.cipher.decrypt(account.refresh_token_enc)
        if account.provider == PROVIDER_GOOGLE:
            access_token, expires_at = await self._refresh_google(account, refresh_token)
        else:
            access_token, expires_at = await self._refresh_microsoft(account, refresh_token)

        access_token_enc = self.cipher.encrypt(access_token)
        refreshed_at = datetime.now(timezone.utc)
        await self.repository.update_fields(
            account.id,
            access_token_enc=access_token_enc,
            expires_at=expires_at,
            last_success_at=refreshed_at,
        )
        account.access_token_enc = access_token_enc
        account.expires_at = expires_at
        account.last_success_at = refreshed_at

        logger.info(
            f"Access token refreshed for account {account.id}",
            extra={"account_id": str(account.id), "provider": account.provider},
        )
        return access_token

    async def _refresh_google(self, account: EmailAccount, refresh_token: str):
        client_id, client_secret = self.settings.require_google_oauth()

        response = await self.http.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        return self._parse_refresh(account, response, "Google")

    async def _refresh_microsoft(self, account: EmailAccount, refresh_token: str):
        client_id, client_secret, tenant = self.settings.require_microsoft_oauth()

        data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if account.scopes:
            data["scope"] = account.scopes

        response = await self.http.post(MICROSOFT_TOKEN_URL.format(tenant=tenant), data=data)
        return self._parse_refresh(account, response, "Microsoft")

    def _parse_refresh(self, account: EmailAccount, response: httpx.Response, label: str):
        if not response.is_success:
            error_code = _provider_error_code(response)
            logger.warning(
                f"{label} token refresh failed for account {account.id}",
                extra={"account_id": str(account.id), "error_code": error_code},
            )
            raise TokenRefreshError(f"{label} token refresh failed: {error_code}")

        data = response.json()
        if not data.get("access_token"):
            raise TokenRefreshError(f"{label} refresh response missing access token")

        expires_in = data.get("expires_in")
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            if expires_in
            else account.expires_at
        )
        return data["access_token"], expires_at
