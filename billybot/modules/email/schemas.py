"""Pydantic models for the email connection API."""

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class RenewalSummary(BaseModel):
    total: int = 0
    renewed: int = 0
    recreated: int = 0
    failed: int = 0


class RenewalResultOut(BaseModel):
    account_id: UUID = Field(serialization_alias="accountId")
    status: str  # 'renewed' | 'recreated' | 'error'


class RenewResponse(BaseModel):
    """Response of POST /api/email/microsoft/renew."""

    ok: bool = True
    summary: RenewalSummary
    results: List[RenewalResultOut] = Field(default_factory=list)


class WatchedAccount(BaseModel):
    id: UUID
    email_address: str
    gmail_history_id: Optional[str] = None


class WatchResponse(BaseModel):
    """Response of POST /api/email/google/watch."""

    ok: bool = True
    updated: List[WatchedAccount] = Field(default_factory=list)


class DisconnectRequest(BaseModel):
    provider: str


class OkResponse(BaseModel):
    ok: bool = True


class WatchdogResultOut(BaseModel):
    account_id: UUID = Field(serialization_alias="accountId")
    provider: str
    action: str  # 'recover' | 'gmail_rewatch' | 'ms_resubscribe'
    status: str  # 'recovered' | 'skipped_backoff' | 'failed_auth' | 'failed_transient'


class WatchdogResponse(BaseModel):
    """Response of POST /api/email/watchdog."""

    ok: bool = True
    total: int = 0
    results: List[WatchdogResultOut] = Field(default_factory=list)


class EmailAccountOut(BaseModel):
    """
    Email account as shown to its owner.

    Encrypted token columns are never included.
    """

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: Literal["google", "microsoft"]
    email_address: str
    status: str
    scopes: Optional[str] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    gmail_history_id: Optional[str] = None
    gmail_watch_expires_at: Optional[datetime] = None
    ms_subscription_id: Optional[str] = None
    ms_subscription_expires_at: Optional[datetime] = None
    email_connection_status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AccountsResponse(BaseModel):
    data: List[EmailAccountOut] = Field(default_factory=list)


class GraphNotification(BaseModel):
    """One item of a Microsoft Graph change-notification POST."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")
    client_state: Optional[str] = Field(default=None, alias="clientState")
    change_type: Optional[str] = Field(default=None, alias="changeType")
    resource: Optional[str] = None


class GraphNotificationBatch(BaseModel):
    value: List[GraphNotification] = Field(default_factory=list)


class NotificationResponse(BaseModel):
    """Response of POST /api/email/microsoft/notify."""

    status: str  # 'accepted' | 'ignored'
    accepted: int = 0
    rejected: int = 0


class SendEmailRequest(BaseModel):
    """Body of POST /api/email/send."""

    model_config = ConfigDict(str_strip_whitespace=True)

    account_id: UUID
    client_id: UUID
    to: str = Field(min_length=1)
    subject: Optional[str] = None
    body: str = Field(min_length=1)
    thread_id: Optional[str] = None
    reply_to_message_id: Optional[str] = None


class SendResponse(BaseModel):
    ok: bool = True
    provider_message_id: Optional[str] = None
    provider_thread_id: Optional[str] = None
