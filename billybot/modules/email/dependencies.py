"""
FastAPI dependencies for the email connection routes.

Long-lived clients (database session factory, httpx client, Redis) are
created in the app lifespan and read from app.state; services are built
per request from them.
"""

from typing import Optional
from uuid import UUID

import httpx
import redis.asyncio as redis
from fastapi import Depends, Header, HTTPException, Request, status

from billybot.core.config import Settings
from billybot.core.database import get_session_factory
from billybot.core.security import TokenCipher, is_valid_internal_token
from billybot.core.session import clear_session, get_session_client_id, is_session_expired
from billybot.modules.email.gmail_watch import GmailWatchService
from billybot.modules.email.microsoft import MicrosoftSubscriptionService
from billybot.modules.email.oauth import EmailOAuthManager, OAuthStateStore
from billybot.modules.email.repository import EmailAccountRepository
from billybot.modules.email.send import EmailSender
from billybot.modules.email.tokens import TokenManager
from billybot.modules.email.watchdog import EmailWatchdog


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_redis(request: Request) -> redis.Redis:
    return request.app.state.redis


def get_token_cipher(settings: Settings = Depends(get_settings)) -> TokenCipher:
    """Raises ConfigurationError (HTTP 500) when the key is missing or invalid."""
    return TokenCipher.from_settings(settings)


def get_repository(session_factory=Depends(get_session_factory)) -> EmailAccountRepository:
    return EmailAccountRepository(session_factory)


def get_token_manager(
    settings: Settings = Depends(get_settings),
    cipher: TokenCipher = Depends(get_token_cipher),
    repository: EmailAccountRepository = Depends(get_repository),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> TokenManager:
    return TokenManager(settings, cipher, repository, http_client)


def get_gmail_watch_service(
    settings: Settings = Depends(get_settings),
    repository: EmailAccountRepository = Depends(get_repository),
    token_manager: TokenManager = Depends(get_token_manager),
) -> GmailWatchService:
    return GmailWatchService(settings, repository, token_manager)


def get_microsoft_service(
    settings: Settings = Depends(get_settings),
    repository: EmailAccountRepository = Depends(get_repository),
    token_manager: TokenManager = Depends(get_token_manager),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> MicrosoftSubscriptionService:
    return MicrosoftSubscriptionService(settings, repository, token_manager, http_client)


def get_watchdog(
    repository: EmailAccountRepository = Depends(get_repository),
    gmail_watch: GmailWatchService = Depends(get_gmail_watch_service),
    microsoft: MicrosoftSubscriptionService = Depends(get_microsoft_service),
) -> EmailWatchdog:
    return EmailWatchdog(repository, gmail_watch, microsoft)


def get_email_sender(
    repository: EmailAccountRepository = Depends(get_repository),
    token_manager: TokenManager = Depends(get_token_manager),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> EmailSender:
    return EmailSender(repository, token_manager, http_client)


def get_oauth_manager(
    settings: Settings = Depends(get_settings),
    redis_client: redis.Redis = Depends(get_redis),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> EmailOAuthManager:
    return EmailOAuthManager(settings, OAuthStateStore(redis_client), http_client)


async def has_internal_token(
    settings: Settings = Depends(get_settings),
    x_internal_token: Optional[str] = Header(default=None),
) -> bool:
    """True when the x-internal-token header matches INTERNAL_JOBS_TOKEN."""
    return is_valid_internal_token(x_internal_token, settings.INTERNAL_JOBS_TOKEN)


async def require_internal_token(internal: bool = Depends(has_internal_token)) -> None:
    """
    Guard for cron/orchestrator endpoints.

    Raises:
        HTTPException: 401 if the x-internal-token header does not match
            INTERNAL_JOBS_TOKEN (or no token is configured)
    """
    if not internal:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="unauthorized",
        )


async def get_current_client_id(request: Request) -> UUID:
    """
    FastAPI dependency returning the signed-in client's ID.

    Raises:
        HTTPException: 401 if not authenticated or session expired

    Usage:
        @router.get("/accounts")
        async def list_accounts(client_id: UUID = Depends(get_current_client_id)):
            ...
    """
    client_id = get_session_client_id(request)
    if not client_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="unauthorized",
        )

    if is_session_expired(request):
        clear_session(request)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired. Please log in again.",
        )

    return client_id


async def get_optional_client_id(request: Request) -> Optional[UUID]:
    """The signed-in client's ID, or None for anonymous/expired sessions."""
    client_id = get_session_client_id(request)
    if client_id and is_session_expired(request):
        clear_session(request)
        return None
    return client_id

