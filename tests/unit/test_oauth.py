"""
Unit tests for the email OAuth connect flow.

Tests:
- Scope normalisation
- Single-use Redis state tokens
- Authorization URLs per provider
- Code exchange and mailbox address lookup
"""

import uuid
from unittest.mock import AsyncMock, MagicMock, Mock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client

from billybot.core.exceptions import ConfigurationError, OAuthExchangeError, OAuthStateError
from billybot.modules.email.oauth import (
    GOOGLE_SCOPES,
    MICROSOFT_SCOPES,
    STATE_TTL_SECONDS,
    EmailOAuthManager,
    OAuthStateStore,
    parse_scope_string,
)


class TestParseScopeString:

    def test_deduplicates_and_keeps_order(self):
        assert parse_scope_string("Mail.Read  openid Mail.Read", MICROSOFT_SCOPES) == "Mail.Read openid"

    def test_falls_back_to_requested_scopes(self):
        assert parse_scope_string(None, GOOGLE_SCOPES) == " ".join(GOOGLE_SCOPES)
        assert parse_scope_string("   ", GOOGLE_SCOPES) == " ".join(GOOGLE_SCOPES)


def make_redis():
    store = {}
    redis_client = Mock()

    async def setex(key, ttl, value):
        store[key] = value.encode()

    async def get(key):
        return store.get(key)

    async def delete(key):
        store.pop(key, None)

    redis_client.setex = AsyncMock(side_effect=setex)
    redis_client.get = AsyncMock(side_effect=get)
    redis_client.delete = AsyncMock(side_effect=delete)
    return redis_client, store


class TestOAuthStateStore:

    @pytest.mark.asyncio
    async def test_state_round_trip(self):
        redis_client, store = make_redis()
        state_store = OAuthStateStore(redis_client)
        client_id = uuid.uuid4()

        state = await state_store.create(client_id)

        redis_client.setex.assert_awaited_once_with(f"oauth_state:{state}", STATE_TTL_SECONDS, str(client_id))
        assert await state_store.consume(state) == client_id

    @pytest.mark.asyncio
    async def test_state_is_single_use(self):
        redis_client, _ = make_redis()
        state_store = OAuthStateStore(redis_client)
        state = await state_store.create(uuid.uuid4())

        await state_store.consume(state)

        with pytest.raises(OAuthStateError):
            await state_store.consume(state)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [None, "", "never-issued"])
    async def test_unknown_state_rejected(self, state):
        redis_client, _ = make_redis()

        with pytest.raises(OAuthStateError):
            await OAuthStateStore(redis_client).consume(state)


def make_manager(settings, http_client=None, gmail_builder=None):
    redis_client, _ = make_redis()
    kwargs = {"gmail_service_builder": gmail_builder} if gmail_builder else {}
    return EmailOAuthManager(settings, OAuthStateStore(redis_client), http_client or Mock(), **kwargs)


class TestAuthorizationUrl:

    @pytest.mark.asyncio
    async def test_google_url_requests_offline_consent(self, settings):
        manager = make_manager(settings)

        url = await manager.get_authorization_url("google", uuid.uuid4())

        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert parsed.netloc == "accounts.google.com"
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["redirect_uri"] == ["https://app.billybot.test/api/email/google/callback"]
        assert query["scope"] == [" ".join(GOOGLE_SCOPES)]
        assert query["state"][0]

    @pytest.mark.asyncio
    async def test_microsoft_url_uses_tenant(self, settings):
        manager = make_manager(settings)

        url = await manager.get_authorization_url("microsoft", uuid.uuid4())

        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert parsed.path == "/common/oauth2/v2.0/authorize"
        assert "offline_access" in query["scope"][0].split()
        assert query["client_id"] == ["ms-client-id"]

    @pytest.mark.asyncio
    async def test_client_closed_when_state_store_fails(self, settings, mocker):
        exit_client = mocker.patch.object(AsyncOAuth2Client, "__aexit__", AsyncMock(return_value=False))
        state_store = Mock()
        state_store.create = AsyncMock(side_effect=ConnectionError("redis down"))
        manager = EmailOAuthManager(settings, state_store, Mock())

        with pytest.raises(ConnectionError):
            await manager.get_authorization_url("google", uuid.uuid4())

        exit_client.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_credentials(self, settings):
        settings.MICROSOFT_CLIENT_ID = None

        with pytest.raises(ConfigurationError):
            await make_manager(settings).get_authorization_url("microsoft", uuid.uuid4())


class TestExchangeCode:

    @pytest.mark.asyncio
    async def test_google_exchange_reads_gmail_profile(self, settings, mocker):
        mocker.patch.object(
            AsyncOAuth2Client,
            "fetch_token",
            AsyncMock(return_value={
                "access_token": "ya29.new",
                "refresh_token": "1//refresh",
                "expires_in": 3599,
                "scope": "https://www.googleapis.com/auth/gmail.readonly",
            }),
        )
        service = MagicMock()
        service.users.return_value.getProfile.return_value.execute.return_value = {"emailAddress": "owner@gmail.com"}
        builder = Mock(return_value=service)

        mailbox = await make_manager(settings, gmail_builder=builder).exchange_code("google", "auth-code")

        builder.assert_called_once_with("ya29.new")
        assert mailbox.email_address == "owner@gmail.com"
        assert mailbox.access_token == "ya29.new"
        assert mailbox.refresh_token == "1//refresh"
        assert mailbox.scopes == "https://www.googleapis.com/auth/gmail.readonly"
        assert mailbox.expires_at is not None

    @pytest.mark.asyncio
    async def test_microsoft_exchange_reads_graph_me(self, settings, mocker):
        mocker.patch.object(
            AsyncOAuth2Client,
            "fetch_token",
            AsyncMock(return_value={"access_token": "eyJ.new", "expires_in": 3600}),
        )
        http_client = Mock()
        http_client.get = AsyncMock(
            return_value=httpx.Response(200, json={"mail": None, "userPrincipalName": "owner@contoso.com"})
        )

        mailbox = await make_manager(settings, http_client=http_client).exchange_code("microsoft", "auth-code")

        assert mailbox.email_address == "owner@contoso.com"
        assert mailbox.refresh_token is None
        assert mailbox.scopes == " ".join(MICROSOFT_SCOPES)

    @pytest.mark.asyncio
    async def test_rejected_code(self, settings, mocker):
        mocker.patch.object(
            AsyncOAuth2Client,
            "fetch_token",
            AsyncMock(side_effect=OAuthError(error="invalid_grant")),
        )

        with pytest.raises(OAuthExchangeError) as exc_info:
            await make_manager(settings).exchange_code("google", "bad-code")

        assert exc_info.value.reason == "token_exchange_failed"

    @pytest.mark.asyncio
    async def test_profile_failure(self, settings, mocker):
        mocker.patch.object(AsyncOAuth2Client, "fetch_token", AsyncMock(return_value={"access_token": "eyJ"}))
        http_client = Mock()
        http_client.get = AsyncMock(return_value=httpx.Response(401, json={}))

        with pytest.raises(OAuthExchangeError) as exc_info:
            await make_manager(settings, http_client=http_client).exchange_code("microsoft", "code")

        assert exc_info.value.reason == "profile_fetch_failed"

    @pytest.mark.asyncio
    async def test_missing_email(self, settings, mocker):
        mocker.patch.object(AsyncOAuth2Client, "fetch_token", AsyncMock(return_value={"access_token": "eyJ"}))
        http_client = Mock()
        http_client.get = AsyncMock(return_value=httpx.Response(200, json={}))

        with pytest.raises(OAuthExchangeError) as exc_info:
            await make_manager(settings, http_client=http_client).exchange_code("microsoft", "code")

        assert exc_info.value.reason == "missing_email"
