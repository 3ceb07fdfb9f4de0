"""
EmailAccount model - one connected mailbox per (client, provider).

Stores encrypted OAuth tokens plus provider push-notification state
(Gmail watch / Microsoft Graph subscription).
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from billybot.core.database import Base

PROVIDER_GOOGLE = "google"
PROVIDER_MICROSOFT = "microsoft"
PROVIDERS = (PROVIDER_GOOGLE, PROVIDER_MICROSOFT)

STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmailAccount(Base):
    """
    Connected email account (Gmail or Microsoft 365).

    CRITICAL SECURITY:
    - access_token_enc and refresh_token_enc are ALWAYS TokenCipher output
    - Tokens are NEVER logged or returned by the API
    """

    __tablename__ = "email_accounts"
    __table_args__ = (
        UniqueConstraint("client_id", "provider", name="uq_email_accounts_client_provider"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), nullable=False, index=True)

    # Provider info
    provider = Column(String, nullable=False)  # 'google' | 'microsoft'
    email_address = Column(String, nullable=False)
    status = Column(String, nullable=False, default=STATUS_CONNECTED)  # 'connected' | 'disconnected'

    # Encrypted OAuth tokens (NEVER store plaintext!)
    access_token_enc = Column(Text, nullable=True)
    refresh_token_enc = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(Text, nullable=True)  # space-delimited

    # Gmail watch state
    gmail_history_id = Column(String, nullable=True)
    gmail_watch_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Microsoft Graph subscription state
    ms_subscription_id = Column(String, nullable=True)
    ms_subscription_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Health tracking
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime(timezone=True), nullable=True)
    last_success_at = Column(DateTime(timezone=True), nullable=True)
    email_connection_status = Column(String, nullable=True)  # display cache only

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<EmailAccount {self.provider}:{self.email_address}>"

    @property
    def scope_list(self) -> list[str]:
        return (self.scopes or "").split()
