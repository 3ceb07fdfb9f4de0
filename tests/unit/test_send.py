"""
Unit tests for sending mail as a connected account.

Tests:
- Gmail raw message encoding and thread replies
- Graph reply vs. sendMail
- Failures recorded on the account with auth classification
"""

import base64
from email import message_from_bytes
from unittest.mock import AsyncMock, MagicMock, Mock

import httplib2
import httpx
import pytest
from googleapiclient.errors import HttpError

from billybot.core.exceptions import ConfigurationError, EmailSendError, GraphRequestError, TokenRefreshError
from billybot.modules.email.microsoft import GRAPH_BASE_URL
from billybot.modules.email.send import (
    EmailSender,
    OutgoingEmail,
    build_raw_message,
    build_reply_subject,
)
from tests.conftest import FakeEmailAccountRepository, make_account, make_microsoft_account


def decode_raw(raw: str):
    padded = raw + "=" * (-len(raw) % 4)
    return message_from_bytes(base64.urlsafe_b64decode(padded))


def make_sender(repository, http_response=None, gmail_response=None, token_error=None):
    token_manager = Mock()
    if token_error:
        token_manager.get_valid_access_token = AsyncMock(side_effect=token_error)
    else:
        token_manager.get_valid_access_token = AsyncMock(return_value="access-token")

    http_client = Mock()
    http_client.post = AsyncMock(return_value=http_response)

    service = MagicMock()
    service.users.return_value.messages.return_value.send.return_value.execute.side_effect = [gmail_response]
    builder = Mock(return_value=service)

    sender = EmailSender(repository, token_manager, http_client, gmail_service_builder=builder)
    return sender, http_client, service


class TestReplySubject:

    @pytest.mark.parametrize(
        "subject, expected",
        [
            ("Quote for the kitchen", "Re: Quote for the kitchen"),
            ("RE: Quote", "RE: Quote"),
            ("  re: Quote  ", "re: Quote"),
            ("", "Re:"),
            (None, "Re:"),
        ],
    )
    def test_reply_subject(self, subject, expected):
        assert build_reply_subject(subject) == expected


class TestRawMessage:

    def test_headers_and_body(self):
        raw = build_raw_message("customer@example.com", "Re: Quote", "Thanks, see you Monday.")

        assert "=" not in raw
        assert "+" not in raw and "/" not in raw

        message = decode_raw(raw)
        assert message["To"] == "customer@example.com"
        assert message["Subject"] == "Re: Quote"
        assert message.get_content_type() == "text/plain"
        assert message.get_payload(decode=True).decode().strip() == "Thanks, see you Monday."


class TestGmailSend:

    @pytest.mark.asyncio
    async def test_reply_in_thread(self):
        account = make_account()
        sender, _, service = make_sender(
            FakeEmailAccountRepository([account]),
            gmail_response={"id": "msg-1", "threadId": "thread-1"},
        )

        result = await sender.send(
            account,
            OutgoingEmail(to_email="customer@example.com", subject="Re: Quote", body="Hi", thread_id="thread-1"),
        )

        assert result.provider_message_id == "msg-1"
        assert result.provider_thread_id == "thread-1"

        kwargs = service.users.return_value.messages.return_value.send.call_args.kwargs
        assert kwargs["userId"] == "me"
        assert kwargs["body"]["threadId"] == "thread-1"
        assert decode_raw(kwargs["body"]["raw"])["To"] == "customer@example.com"

    @pytest.mark.asyncio
    async def test_new_message_has_no_thread(self):
        account = make_account()
        sender, _, service = make_sender(FakeEmailAccountRepository([account]), gmail_response={"id": "msg-2"})

        await sender.send(account, OutgoingEmail(to_email="a@example.com", subject="Hello", body="Hi"))

        body = service.users.return_value.messages.return_value.send.call_args.kwargs["body"]
        assert "threadId" not in body

    @pytest.mark.asyncio
    async def test_api_error_is_recorded(self):
        account = make_account()
        repository = FakeEmailAccountRepository([account])
        error = HttpError(httplib2.Response({"status": 403, "reason": "Forbidden"}), b'{"error": "x"}')
        sender, _, _ = make_sender(repository, gmail_response=error)

        with pytest.raises(EmailSendError, match="Gmail send failed"):
            await sender.send(account, OutgoingEmail(to_email="a@example.com", subject="Hello", body="Hi"))

        assert account.last_error.startswith("Gmail send failed (403)")
        assert account.last_error_at is not None
        assert account.status == "connected"


class TestMicrosoftSend:

    @pytest.mark.asyncio
    async def test_reply_to_message(self):
        account = make_microsoft_account()
        sender, http_client, _ = make_sender(
            FakeEmailAccountRepository([account]), http_response=httpx.Response(202)
        )

        result = await sender.send(
            account,
            OutgoingEmail(to_email="a@example.com", subject="Re: Quote", body="Thanks", reply_to_message_id="AAMk=="),
        )

        assert result.provider_message_id is None
        url = http_client.post.call_args.args[0]
        assert url == f"{GRAPH_BASE_URL}/me/messages/AAMk==/reply"
        assert http_client.post.call_args.kwargs["json"] == {"comment": "Thanks"}
        assert http_client.post.call_args.kwargs["headers"] == {"Authorization": "Bearer access-token"}

    @pytest.mark.asyncio
    async def test_new_message_uses_send_mail(self):
        account = make_microsoft_account()
        sender, http_client, _ = make_sender(
            FakeEmailAccountRepository([account]), http_response=httpx.Response(202)
        )

        await sender.send(account, OutgoingEmail(to_email="a@example.com", subject="Hello", body="Hi"))

        assert http_client.post.call_args.args[0] == f"{GRAPH_BASE_URL}/me/sendMail"
        message = http_client.post.call_args.kwargs["json"]["message"]
        assert message["subject"] == "Hello"
        assert message["toRecipients"] == [{"emailAddress": {"address": "a@example.com"}}]

    @pytest.mark.asyncio
    async def test_graph_error_is_recorded(self):
        account = make_microsoft_account()
        repository = FakeEmailAccountRepository([account])
        sender, _, _ = make_sender(
            repository,
            http_response=httpx.Response(403, json={"error": {"code": "ErrorAccessDenied"}}),
        )

        with pytest.raises(GraphRequestError):
            await sender.send(account, OutgoingEmail(to_email="a@example.com", subject="Hello", body="Hi"))

        assert account.last_error == "Microsoft Graph request failed (403): ErrorAccessDenied"
        # Not an auth failure, so no cached status
        assert account.email_connection_status is None


class TestSendFailures:

    @pytest.mark.asyncio
    async def test_token_failure_is_recorded(self):
        account = make_account()
        repository = FakeEmailAccountRepository([account])
        sender, _, _ = make_sender(repository, token_error=TokenRefreshError("Google token refresh failed: invalid_grant"))

        with pytest.raises(TokenRefreshError):
            await sender.send(account, OutgoingEmail(to_email="a@example.com", subject="Hello", body="Hi"))

        assert account.email_connection_status == "provider_revoked"

    @pytest.mark.asyncio
    async def test_configuration_error_not_recorded(self):
        account = make_account()
        repository = FakeEmailAccountRepository([account])
        sender, _, _ = make_sender(repository, token_error=ConfigurationError("Missing Google OAuth credentials"))

        with pytest.raises(ConfigurationError):
            await sender.send(account, OutgoingEmail(to_email="a@example.com", subject="Hello", body="Hi"))

        assert repository.writes == []

    @pytest.mark.asyncio
    async def test_failed_bookkeeping_keeps_original_error(self):
        account = make_account()
        repository = FakeEmailAccountRepository([account])
        repository.fail_writes_for.add(account.id)
        sender, _, _ = make_sender(repository, token_error=TokenRefreshError("Missing refresh token"))

        with pytest.raises(TokenRefreshError):
            await sender.send(account, OutgoingEmail(to_email="a@example.com", subject="Hello", body="Hi"))
