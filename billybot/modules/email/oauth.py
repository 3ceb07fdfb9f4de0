"""
Email OAuth connect flow for Google and Microsoft using Authlib.

Handles:
- Authorization URL generation with a Redis-backed CSRF state token
- Authorization code exchange
- Looking up the connected mailbox address (Gmail profile / Graph /me)

CRITICAL SECURITY:
- NEVER log tokens (access_token, refresh_token)
- State tokens are single-use and expire after 10 minutes
- Tokens returned here are plaintext; callers encrypt before storage
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional
from uuid import UUID

import httpx
import redis.asyncio as redis
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.integrations.base_client import OAuthError
from googleapiclient.errors import HttpError

from billybot.core.config import Settings
from billybot.core.exceptions import OAuthExchangeError, OAuthStateError
from billybot.core.security import generate_state_token
from billybot.models.email_account import PROVIDER_GOOGLE, PROVIDERS
from billybot.modules.email.gmail_watch import build_gmail_service
from billybot.modules.email.microsoft import GRAPH_BASE_URL
from billybot.modules.email.tokens import GOOGLE_TOKEN_URL, MICROSOFT_TOKEN_URL

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
MICROSOFT_AUTHORIZE_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize"

GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
]
MICROSOFT_SCOPES = [
    "openid",
    "profile",
    "email",
    "offline_access",
    "Mail.Read",
    "Mail.Send",
]

STATE_TTL_SECONDS = 600  # 10 minutes
STATE_KEY_PREFIX = "oauth_state:"


def parse_scope_string(scope_string: Optional[str], fallback: Iterable[str]) -> str:
    """
    Normalise a granted-scope string to space-delimited, de-duplicated form.

    Providers may omit the scope in the token response; the requested
    scopes are stored instead.
    """
    scopes = list(dict.fromkeys((scope_string or "").split()))
    if not scopes:
        scopes = list(dict.fromkeys(fallback))
    return " ".join(scopes)


class OAuthStateStore:
    """
    Single-use OAuth state tokens mapped to the client that started the flow.

    Usage:
        store = OAuthStateStore(redis_client)
        state = await store.create(client_id)
        client_id = await store.consume(state)
    """

    def __init__(self, redis_client: redis.Redis):
        self._redis = redis_client

    async def create(self, client_id: UUID) -> str:
        state = generate_state_token()
        await self._redis.setex(f"{STATE_KEY_PREFIX}{state}", STATE_TTL_SECONDS, str(client_id))
        return state

    async def consume(self, state: Optional[str]) -> UUID:
        """
        Verify and delete a state token.

        Raises:
            OAuthStateError: Unknown, expired or already used state

        CRITICAL: Always call this before exchanging the code for tokens!
        """
        if not state:
            raise OAuthStateError("Missing OAuth state")

        key = f"{STATE_KEY_PREFIX}{state}"
        client_id = await self._redis.get(key)
        if client_id is None:
            raise OAuthStateError("Unknown or expired OAuth state")

        # One-time use
        await self._redis.delete(key)

        if isinstance(client_id, bytes):
            client_id = client_id.decode()
        try:
            return UUID(client_id)
        except ValueError:
            raise OAuthStateError("OAuth state is not bound to a client")


@dataclass
class ConnectedMailbox:
    """Result of a successful code exchange. Tokens are plaintext."""

    email_address: str
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    scopes: str


class EmailOAuthManager:
    """
    Builds authorization URLs and completes the code exchange.

    Usage:
        manager = EmailOAuthManager(settings, state_store, http_client)
        url = await manager.get_authorization_url("google", client_id)
        # User consents, provider redirects back with code + state
        client_id = await state_store.consume(state)
        mailbox = await manager.exchange_code("google", code)
    """

    def __init__(
        self,
        settings: Settings,
        state_store: OAuthStateStore,
        http_client: httpx.AsyncClient,
        gmail_service_builder: Callable = build_gmail_service,
    ):
        self.settings = settings
        self.state_store = state_store
        self.http = http_client
        self._build_gmail_service = gmail_service_builder

    def redirect_uri(self, provider: str) -> str:
        return self.settings.app_url(f"/api/email/{provider}/callback")

    def _oauth_client(self, provider: str) -> AsyncOAuth2Client:
        if provider == PROVIDER_GOOGLE:
            client_id, client_secret = self.settings.require_google_oauth()
            scope = GOOGLE_SCOPES
        else:
            client_id, client_secret, _ = self.settings.require_microsoft_oauth()
            scope = MICROSOFT_SCOPES

        return AsyncOAuth2Client(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=self.redirect_uri(provider),
            scope=" ".join(scope),
            token_endpoint_auth_method="client_secret_post",
            timeout=self.settings.HTTP_TIMEOUT_SECONDS,
        )

    async def get_authorization_url(self, provider: str, client_id: UUID) -> str:
        """
        Generate the provider consent URL and store its state token.

        Raises:
            ConfigurationError: Provider OAuth credentials are not configured
        """
        if provider not in PROVIDERS:
            raise ValueError(f"Unsupported provider: {provider}")

        async with self._oauth_client(provider) as client:
            state = await self.state_store.create(client_id)

            if provider == PROVIDER_GOOGLE:
                auth_url, _ = client.create_authorization_url(
                    GOOGLE_AUTHORIZE_URL,
                    state=state,
                    access_type="offline",  # Request refresh token
                    prompt="consent",  # Force consent screen (ensures refresh token)
                )
            else:
                _, _, tenant = self.settings.require_microsoft_oauth()
                auth_url, _ = client.create_authorization_url(
                    MICROSOFT_AUTHORIZE_URL.format(tenant=tenant),
                    state=state,
                    response_mode="query",
                )

        return auth_url

    async def exchange_code(self, provider: str, code: str) -> ConnectedMailbox:
        """
        Exchange an authorization code and look up the mailbox address.

        Raises:
            OAuthExchangeError: With reason token_exchange_failed,
                missing_access_token, profile_fetch_failed or missing_email
            ConfigurationError: Provider OAuth credentials are not configured
        """
        if provider == PROVIDER_GOOGLE:
            token_url = GOOGLE_TOKEN_URL
            default_scopes = GOOGLE_SCOPES
        else:
            _, _, tenant = self.settings.require_microsoft_oauth()
            token_url = MICROSOFT_TOKEN_URL.format(tenant=tenant)
            default_scopes = MICROSOFT_SCOPES

        async with self._oauth_client(provider) as client:
            try:
                token = await client.fetch_token(token_url, code=code, grant_type="authorization_code")
            except (OAuthError, httpx.HTTPError, ValueError) as e:
                logger.warning(
                    f"{provider} token exchange failed: {type(e).__name__}",
                    extra={"provider": provider},
                )
                raise OAuthExchangeError("Token exchange failed", reason="token_exchange_failed")

        access_token = token.get("access_token")
        if not access_token:
            raise OAuthExchangeError("Token response missing access token", reason="missing_access_token")

        if provider == PROVIDER_GOOGLE:
            email_address = await self._fetch_google_email(access_token)
        else:
            email_address = await self._fetch_microsoft_email(access_token)

        if not email_address:
            raise OAuthExchangeError("Provider profile has no email address", reason="missing_email")

        expires_in = token.get("expires_in")
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=int(expires_in)) if expires_in else None
        )

        return ConnectedMailbox(
            email_address=email_address,
            access_token=access_token,
            refresh_token=token.get("refresh_token"),
            expires_at=expires_at,
            scopes=parse_scope_string(token.get("scope"), default_scopes),
        )

    async def _fetch_google_email(self, access_token: str) -> Optional[str]:
        service = self._build_gmail_service(access_token)
        try:
            profile = await asyncio.to_thread(service.users().getProfile(userId="me").execute)
        except HttpError as e:
            logger.warning(f"Gmail profile fetch failed: {e.status_code}")
            raise OAuthExchangeError("Gmail profile fetch failed", reason="profile_fetch_failed")
        return profile.get("emailAddress")

    async def _fetch_microsoft_email(self, access_token: str) -> Optional[str]:
        try:
            response = await self.http.get(
                f"{GRAPH_BASE_URL}/me",
                params={"$select": "mail,userPrincipalName"},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Microsoft profile fetch failed: {type(e).__name__}")
            raise OAuthExchangeError("Microsoft profile fetch failed", reason="profile_fetch_failed")

        if not response.is_success:
            logger.warning(f"Microsoft profile fetch failed: {response.status_code}")
            raise OAuthExchangeError("Microsoft profile fetch failed", reason="profile_fetch_failed")

        profile = response.json()
        return profile.get("mail") or profile.get("userPrincipalName")

