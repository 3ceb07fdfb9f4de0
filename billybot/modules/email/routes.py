"""
Email connection API routes.

Endpoints:
- GET  /api/email/accounts                list the client's mailboxes (no secrets)
- POST /api/email/accounts/disconnect     wipe tokens and watch state
- GET  /api/email/{provider}/start        begin OAuth connect
- GET  /api/email/{provider}/callback     finish OAuth connect
- POST /api/email/google/watch            register Gmail watches (internal + session)
- POST /api/email/microsoft/renew         renew due Graph subscriptions (internal)
- POST /api/email/microsoft/subscribe     ensure Graph subscriptions (internal + session)
- GET|POST /api/email/microsoft/notify    Graph validation + change notifications
- POST /api/email/send                    send as a connected account (internal or session)
- POST /api/email/watchdog                recover lapsed push channels (internal)
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import urlencode
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import ValidationError

from billybot.core.config import Settings
from billybot.core.exceptions import ConfigurationError, OAuthExchangeError, OAuthStateError
from billybot.core.security import TokenCipher
from billybot.models.email_account import PROVIDER_GOOGLE, PROVIDER_MICROSOFT, PROVIDERS, STATUS_CONNECTED
from billybot.modules.email.dependencies import (
    get_current_client_id,
    get_email_sender,
    get_gmail_watch_service,
    get_http_client,
    get_microsoft_service,
    get_oauth_manager,
    get_optional_client_id,
    get_repository,
    get_settings,
    get_watchdog,
    has_internal_token,
    require_internal_token,
)
from billybot.modules.email.gmail_watch import GmailWatchService
from billybot.modules.email.microsoft import MicrosoftSubscriptionService, record_notifications
from billybot.modules.email.oauth import EmailOAuthManager
from billybot.modules.email.repository import EmailAccountRepository
from billybot.modules.email.schemas import (
    AccountsResponse,
    DisconnectRequest,
    EmailAccountOut,
    GraphNotificationBatch,
    NotificationResponse,
    OkResponse,
    RenewalResultOut,
    RenewalSummary,
    RenewResponse,
    SendEmailRequest,
    SendResponse,
    WatchdogResponse,
    WatchdogResultOut,
    WatchedAccount,
    WatchResponse,
)
from billybot.modules.email.send import EmailSender, OutgoingEmail, build_reply_subject
from billybot.modules.email.status import classify_connection_status
from billybot.modules.email.tokens import TokenManager
from billybot.modules.email.watchdog import EmailWatchdog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/email", tags=["email"])


def _account_redirect(settings: Settings, **query) -> RedirectResponse:
    url = f"{settings.app_url('/account')}?{urlencode(query)}"
    return RedirectResponse(url=url, status_code=302)


def _check_provider(provider: str) -> str:
    if provider not in PROVIDERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not_found")
    return provider


@router.get("/accounts", response_model=AccountsResponse)
async def list_accounts(
    client_id: UUID = Depends(get_current_client_id),
    repository: EmailAccountRepository = Depends(get_repository),
):
    """Connected mailboxes for the signed-in client, with their connection status."""
    accounts = await repository.list_for_client(client_id)

    data = []
    for account in accounts:
        connection_status = account.email_connection_status or classify_connection_status(account).value
        out = EmailAccountOut(
            id=account.id,
            provider=account.provider,
            email_address=account.email_address,
            status=account.status,
            scopes=account.scopes,
            last_error=account.last_error,
            last_error_at=account.last_error_at,
            last_success_at=account.last_success_at,
            gmail_history_id=account.gmail_history_id,
            gmail_watch_expires_at=account.gmail_watch_expires_at,
            ms_subscription_id=account.ms_subscription_id,
            ms_subscription_expires_at=account.ms_subscription_expires_at,
            email_connection_status=connection_status,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )
        data.append(out)

    return AccountsResponse(data=data)


@router.post("/accounts/disconnect", response_model=OkResponse)
async def disconnect_account(
    body: DisconnectRequest,
    client_id: UUID = Depends(get_current_client_id),
    repository: EmailAccountRepository = Depends(get_repository),
):
    """
    Disconnect the client's mailbox for a provider.

    Every token and watch/subscription field is cleared so no scheduled job
    can touch the mailbox again until it is reconnected.
    """
    if body.provider not in PROVIDERS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_provider")

    await repository.disconnect(client_id, body.provider)
    return OkResponse()


@router.post(
    "/google/watch",
    response_model=WatchResponse,
    dependencies=[Depends(require_internal_token)],
)
async def register_gmail_watches(
    client_id: UUID = Depends(get_current_client_id),
    repository: EmailAccountRepository = Depends(get_repository),
    gmail_watch: GmailWatchService = Depends(get_gmail_watch_service),
):
    """Register Gmail watches for the signed-in client's Google accounts."""
    accounts = await repository.list_for_client(client_id, provider=PROVIDER_GOOGLE)
    if not accounts:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not_found")

    updated = await gmail_watch.register_watches(accounts)
    return WatchResponse(updated=[WatchedAccount(**item) for item in updated])


@router.post(
    "/microsoft/renew",
    response_model=RenewResponse,
    dependencies=[Depends(require_internal_token)],
)
async def renew_microsoft_subscriptions(
    microsoft: MicrosoftSubscriptionService = Depends(get_microsoft_service),
):
    """Renew every Microsoft subscription close to expiry."""
    report = await microsoft.renew_due_subscriptions()

    return RenewResponse(
        summary=RenewalSummary(**report.summary),
        results=[
            RenewalResultOut(account_id=result.account_id, status=result.status)
            for result in report.results
        ],
    )


@router.post(
    "/microsoft/subscribe",
    response_model=OkResponse,
    dependencies=[Depends(require_internal_token)],
)
async def subscribe_microsoft_accounts(
    client_id: UUID = Depends(get_current_client_id),
    repository: EmailAccountRepository = Depends(get_repository),
    microsoft: MicrosoftSubscriptionService = Depends(get_microsoft_service),
):
    """
    Make sure each of the signed-in client's Microsoft accounts has a live
    Graph subscription.

    Failures are recorded on the account by the service; any failure turns
    the response into 500 subscription_failed.
    """
    accounts = await repository.list_for_client(client_id, provider=PROVIDER_MICROSOFT)

    results = await asyncio.gather(
        *(microsoft.ensure_subscription(account) for account in accounts),
        return_exceptions=True,
    )
    failures = [result for result in results if isinstance(result, Exception)]

    if failures:
        logger.error(
            f"Microsoft subscribe failed for {len(failures)} of {len(accounts)} accounts: {failures[0]}",
            extra={"client_id": str(client_id), "failed": len(failures)},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="subscription_failed",
        )

    return OkResponse()


@router.api_route("/microsoft/notify", methods=["GET", "POST"])
async def microsoft_notifications(
    request: Request,
    validation_token: Optional[str] = Query(default=None, alias="validationToken"),
    settings: Settings = Depends(get_settings),
    repository: EmailAccountRepository = Depends(get_repository),
):
    """
    Microsoft Graph change-notification endpoint.

    Subscription validation: Graph calls with ?validationToken=... and
    expects the token echoed back as text/plain within 10 seconds.

    Notifications: each item's clientState must match
    MICROSOFT_CLIENT_STATE_TOKEN. Trusted items mark their account as alive.

    CRITICAL: Always answers 2xx for notifications, even malformed ones,
    so Graph does not retry or drop the subscription.
    """
    if validation_token:
        return PlainTextResponse(validation_token, status_code=status.HTTP_200_OK)

    if request.method == "GET":
        return OkResponse()

    try:
        batch = GraphNotificationBatch.model_validate(await request.json())
    except (ValueError, ValidationError) as e:
        logger.warning(f"Invalid Microsoft notification payload: {type(e).__name__}")
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=NotificationResponse(status="ignored").model_dump(),
        )

    report = await record_notifications(
        repository, batch.value, settings.MICROSOFT_CLIENT_STATE_TOKEN
    )

    logger.info(
        f"Microsoft notifications received: {report.received} "
        f"({report.accepted} accepted, {report.rejected} rejected)",
        extra={
            "received": report.received,
            "accepted": report.accepted,
            "rejected": report.rejected,
            "unmatched": report.unmatched,
            "failed": report.failed,
        },
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=NotificationResponse(
            status="accepted", accepted=report.accepted, rejected=report.rejected
        ).model_dump(),
    )


@router.post(
    "/watchdog",
    response_model=WatchdogResponse,
    dependencies=[Depends(require_internal_token)],
)
async def run_watchdog(watchdog: EmailWatchdog = Depends(get_watchdog)):
    """Re-register lapsed Gmail watches and Microsoft subscriptions."""
    results = await watchdog.run()

    return WatchdogResponse(
        total=len(results),
        results=[
            WatchdogResultOut(
                account_id=result.account_id,
                provider=result.provider,
                action=result.action,
                status=result.status,
            )
            for result in results
        ],
    )


@router.post("/send", response_model=SendResponse)
async def send_email(
    body: SendEmailRequest,
    internal: bool = Depends(has_internal_token),
    session_client_id: Optional[UUID] = Depends(get_optional_client_id),
    repository: EmailAccountRepository = Depends(get_repository),
    sender: EmailSender = Depends(get_email_sender),
):
    """
    Send mail as one of a client's connected accounts.

    Internal callers (x-internal-token) may send for any client_id; a
    signed-in client may only send for itself.
    """
    if not internal:
        if session_client_id is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")
        if session_client_id != body.client_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")

    account = await repository.get_for_client(body.account_id, body.client_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account_not_found")

    if account.status != STATUS_CONNECTED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="account_not_connected")

    is_reply = bool(body.thread_id or body.reply_to_message_id)
    email = OutgoingEmail(
        to_email=body.to,
        subject=build_reply_subject(body.subject) if is_reply else (body.subject or ""),
        body=body.body,
        thread_id=body.thread_id,
        reply_to_message_id=body.reply_to_message_id,
    )

    try:
        result = await sender.send(account, email)
    except ConfigurationError:
        raise
    except Exception:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="send_failed")

    return SendResponse(
        provider_message_id=result.provider_message_id,
        provider_thread_id=result.provider_thread_id,
    )


@router.get("/{provider}/start")
async def start_oauth(
    provider: str = Depends(_check_provider),
    client_id: UUID = Depends(get_current_client_id),
    oauth: EmailOAuthManager = Depends(get_oauth_manager),
):
    """Redirect the signed-in client to the provider consent screen."""
    auth_url = await oauth.get_authorization_url(provider, client_id)
    return RedirectResponse(url=auth_url, status_code=302)


@router.get("/{provider}/callback")
async def oauth_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    provider: str = Depends(_check_provider),
    settings: Settings = Depends(get_settings),
    oauth: EmailOAuthManager = Depends(get_oauth_manager),
    repository: EmailAccountRepository = Depends(get_repository),
    http_client: httpx.AsyncClient = Depends(get_http_client),
):
    """
    OAuth callback: store the connected mailbox and start push notifications.

    Always redirects back to the account page, with either
    ?email_connected=<provider> or ?email_error=<reason>.
    """
    try:
        client_id = await oauth.state_store.consume(state)
    except OAuthStateError as e:
        logger.warning(f"OAuth state rejected for {provider}: {e}", extra={"provider": provider})
        return _account_redirect(settings, email_error="state_mismatch")

    if error:
        logger.warning(f"{provider} OAuth returned error", extra={"provider": provider, "error": error})
        return _account_redirect(settings, email_error="oauth_error")

    if not code:
        return _account_redirect(settings, email_error="missing_code")

    try:
        cipher = TokenCipher.from_settings(settings)
        mailbox = await oauth.exchange_code(provider, code)
    except ConfigurationError as e:
        logger.error(f"{provider} OAuth misconfigured: {e}", extra={"provider": provider})
        return _account_redirect(settings, email_error="missing_config")
    except OAuthExchangeError as e:
        return _account_redirect(settings, email_error=e.reason)

    try:
        account = await repository.upsert_connected(
            client_id=client_id,
            provider=provider,
            email_address=mailbox.email_address,
            access_token_enc=cipher.encrypt(mailbox.access_token),
            refresh_token_enc=cipher.encrypt(mailbox.refresh_token) if mailbox.refresh_token else None,
            expires_at=mailbox.expires_at,
            scopes=mailbox.scopes,
        )
    except Exception as e:
        logger.error(
            f"Failed to store {provider} account for client {client_id}: {type(e).__name__}",
            extra={"client_id": str(client_id), "provider": provider},
        )
        return _account_redirect(settings, email_error="db_write_failed")

    token_manager = TokenManager(settings, cipher, repository, http_client)
    try:
        if provider == PROVIDER_GOOGLE:
            await GmailWatchService(settings, repository, token_manager).start_watch(account, force=True)
        else:
            await MicrosoftSubscriptionService(
                settings, repository, token_manager, http_client
            ).ensure_subscription(account, force=True)
    except Exception as e:
        # The mailbox stays connected; the watchdog retries push registration.
        logger.error(
            f"Failed to start push notifications for account {account.id}: {e}",
            extra={"account_id": str(account.id), "provider": provider},
        )

    logger.info(
        f"{provider} mailbox connected for client {client_id}",
        extra={"client_id": str(client_id), "provider": provider, "account_id": str(account.id)},
    )
    return _account_redirect(settings, email_connected=provider)
