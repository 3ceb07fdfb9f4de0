"""
Outgoing mail through a connected mailbox.

Handles:
- Gmail: users.messages.send with a base64url RFC 5322 message
- Microsoft: Graph reply (POST /me/messages/{id}/reply) or POST /me/sendMail
- Recording the failure on the account when the provider refuses

CRITICAL SECURITY:
- NEVER log tokens or message bodies
"""

import asyncio
import base64
import logging
import re
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Callable, Optional

import httpx
from googleapiclient.errors import HttpError

from billybot.core.exceptions import ConfigurationError, EmailSendError
from billybot.models.email_account import PROVIDER_GOOGLE, STATUS_CONNECTED, EmailAccount
from billybot.modules.email.gmail_watch import build_gmail_service
from billybot.modules.email.microsoft import GRAPH_BASE_URL, graph_request_error
from billybot.modules.email.repository import EmailAccountRepository
from billybot.modules.email.status import classify_auth_failure
from billybot.modules.email.tokens import TokenManager

logger = logging.getLogger(__name__)

REPLY_PREFIX = re.compile(r"^re:", re.IGNORECASE)


@dataclass
class OutgoingEmail:
    to_email: str
    subject: str
    body: str
    thread_id: Optional[str] = None  # Gmail thread to reply in
    reply_to_message_id: Optional[str] = None  # Graph message to reply to


@dataclass
class SendResult:
    provider_message_id: Optional[str]
    provider_thread_id: Optional[str]


def build_reply_subject(subject: Optional[str]) -> str:
    normalized = (subject or "").strip()
    if not normalized:
        return "Re:"
    if REPLY_PREFIX.match(normalized):
        return normalized
    return f"Re: {normalized}"


def build_raw_message(to_email: str, subject: str, body: str) -> str:
    """Plain-text message encoded the way the Gmail API expects (base64url, unpadded)."""
    message = EmailMessage()
    message["To"] = to_email
    message["Subject"] = subject
    message.set_content(body)
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")


class EmailSender:
    """
    Sends mail as a connected account.

    Usage:
        sender = EmailSender(repository, token_manager, http_client)
        result = await sender.send(account, OutgoingEmail(to_email=..., subject=..., body=...))
    """

    def __init__(
        self,
        repository: EmailAccountRepository,
        token_manager: TokenManager,
        http_client: httpx.AsyncClient,
        gmail_service_builder: Callable = build_gmail_service,
    ):
        self.repository = repository
        self.token_manager = token_manager
        self.http = http_client
        self._build_gmail_service = gmail_service_builder

    async def _send_gmail(self, access_token: str, email: OutgoingEmail) -> SendResult:
        body = {"raw": build_raw_message(email.to_email, email.subject, email.body)}
        if email.thread_id:
            body["threadId"] = email.thread_id

        service = self._build_gmail_service(access_token)
        request = service.users().messages().send(userId="me", body=body)

        try:
            response = await asyncio.to_thread(request.execute)
        except HttpError as e:
            raise EmailSendError(f"Gmail send failed ({e.status_code}): {e.reason}")

        return SendResult(
            provider_message_id=response.get("id"),
            provider_thread_id=response.get("threadId") or email.thread_id,
        )

    async def _send_microsoft(self, access_token: str, email: OutgoingEmail) -> SendResult:
        if email.reply_to_message_id:
            url = f"{GRAPH_BASE_URL}/me/messages/{email.reply_to_message_id}/reply"
            payload = {"comment": email.body}
        else:
            url = f"{GRAPH_BASE_URL}/me/sendMail"
            payload = {
                "message": {
                    "subject": email.subject,
                    "body": {"contentType": "Text", "content": email.body},
                    "toRecipients": [{"emailAddress": {"address": email.to_email}}],
                },
                "saveToSentItems": True,
            }

        response = await self.http.post(
            url,
            json=payload,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not response.is_success:
            raise graph_request_error(response)

        # Graph answers 202 with no body; it does not return the new message id
        return SendResult(provider_message_id=None, provider_thread_id=None)

    async def _record_failure(self, account: EmailAccount, error: Exception) -> None:
        message = str(error) or "Email send failed"
        try:
            await self.repository.mark_account_status(
                account.id,
                account.status or STATUS_CONNECTED,
                last_error=message,
                connection_status=classify_auth_failure(message),
            )
        except Exception:
            logger.exception(
                f"Failed to record send error for account {account.id}",
                extra={"account_id": str(account.id)},
            )

    async def send(self, account: EmailAccount, email: OutgoingEmail) -> SendResult:
        """
        Send one message as the account.

        Raises:
            ConfigurationError: Provider OAuth credentials are not configured
            ProviderError / TokenCipherError: The send failed; the error is
                recorded on the account before it is re-raised
        """
        try:
            access_token = await self.token_manager.get_valid_access_token(account)
            if account.provider == PROVIDER_GOOGLE:
                result = await self._send_gmail(access_token, email)
            else:
                result = await self._send_microsoft(access_token, email)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(
                f"Failed to send email from account {account.id}: {e}",
                extra={"account_id": str(account.id), "provider": account.provider},
            )
            await self._record_failure(account, e)
            raise

        logger.info(
            f"Email sent from account {account.id}",
            extra={"account_id": str(account.id), "provider": account.provider},
        )
        return result
