"""
Persistence for email accounts.

Every write is a single-row (or single (client, provider)) statement in its
own short session and transaction. Batch jobs call these concurrently, one
account per task, and a failed write never rolls back another account's.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billybot.models.email_account import (
    PROVIDER_MICROSOFT,
    STATUS_CONNECTED,
    STATUS_DISCONNECTED,
    EmailAccount,
    utcnow,
)
from billybot.modules.email.status import ConnectionStatus

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self):
        return "UNSET"


UNSET = _Unset()

# Columns nulled by disconnect. Leaving any of these behind would let a
# renewal job resurrect a disconnected mailbox.
DISCONNECT_WIPE = {
    "status": STATUS_DISCONNECTED,
    "last_error": None,
    "last_error_at": None,
    "access_token_enc": None,
    "refresh_token_enc": None,
    "expires_at": None,
    "scopes": None,
    "gmail_history_id": None,
    "gmail_watch_expires_at": None,
    "ms_subscription_id": None,
    "ms_subscription_expires_at": None,
    "email_connection_status": ConnectionStatus.INACTIVE.value,
}


def build_status_update(
    status: str,
    last_error=UNSET,
    connection_status: Optional[ConnectionStatus] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Column values for mark_account_status.

    Omitted arguments produce no key, so the column is left untouched.
    An explicit last_error=None clears both last_error and last_error_at.
    """
    values = {"status": status}

    if last_error is not UNSET:
        values["last_error"] = last_error
        values["last_error_at"] = (now or utcnow()) if last_error else None

    if connection_status:
        values["email_connection_status"] = ConnectionStatus(connection_status).value

    return values


class EmailAccountRepository:
    """
    Reads and writes email_accounts rows.

    Usage:
        repo = EmailAccountRepository(session_factory)
        accounts = await repo.list_for_client(client_id, provider="google")
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, account_id: UUID) -> Optional[EmailAccount]:
        async with self._session_factory() as session:
            return await session.get(EmailAccount, account_id)

    async def get_for_client(self, account_id: UUID, client_id: UUID) -> Optional[EmailAccount]:
        """The account, only if it belongs to client_id."""
        query = select(EmailAccount).where(
            EmailAccount.id == account_id,
            EmailAccount.client_id == client_id,
        )

        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalars().first()

    async def get_by_subscription_id(self, subscription_id: str) -> Optional[EmailAccount]:
        query = select(EmailAccount).where(
            EmailAccount.provider == PROVIDER_MICROSOFT,
            EmailAccount.ms_subscription_id == subscription_id,
        )

        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalars().first()

    async def list_for_client(
        self, client_id: UUID, provider: Optional[str] = None
    ) -> list[EmailAccount]:
        query = select(EmailAccount).where(EmailAccount.client_id == client_id)
        if provider:
            query = query.where(EmailAccount.provider == provider)
        query = query.order_by(EmailAccount.created_at.asc())

        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_microsoft_due_for_renewal(self, cutoff: datetime) -> list[EmailAccount]:
        """Microsoft accounts with a subscription expiring at or before cutoff."""
        query = select(EmailAccount).where(
            EmailAccount.provider == PROVIDER_MICROSOFT,
            EmailAccount.ms_subscription_id.is_not(None),
            EmailAccount.ms_subscription_expires_at <= cutoff,
        )

        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_connected(self) -> list[EmailAccount]:
        query = select(EmailAccount).where(EmailAccount.status == STATUS_CONNECTED)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def update_fields(self, account_id: UUID, **values) -> None:
        """Single-row partial update."""
        if not values:
            return

        async with self._session_factory() as session:
            await session.execute(
                update(EmailAccount).where(EmailAccount.id == account_id).values(**values)
            )
            await session.commit()

    async def mark_account_status(
        self,
        account_id: UUID,
        status: str,
        last_error=UNSET,
        connection_status: Optional[ConnectionStatus] = None,
    ) -> None:
        """
        Update the persisted status, and optionally the error and cached status.

        Args:
            account_id: Account to update
            status: 'connected' | 'disconnected'
            last_error: Error text, None to clear, or omitted to leave as is
            connection_status: Cached display status, omitted to leave as is
        """
        values = build_status_update(status, last_error, connection_status)
        await self.update_fields(account_id, **values)

    async def disconnect(self, client_id: UUID, provider: str) -> int:
        """Wipe every token and watch field for the client's provider account."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(EmailAccount)
                .where(
                    EmailAccount.client_id == client_id,
                    EmailAccount.provider == provider,
                )
                .values(**DISCONNECT_WIPE)
            )
            await session.commit()

        logger.info(
            f"Disconnected {provider} account for client {client_id}",
            extra={"client_id": str(client_id), "provider": provider},
        )
        return result.rowcount

    async def upsert_connected(
        self,
        client_id: UUID,
        provider: str,
        email_address: str,
        access_token_enc: str,
        refresh_token_enc: Optional[str],
        expires_at: Optional[datetime],
        scopes: str,
    ) -> EmailAccount:
        """
        Insert or reconnect the (client, provider) account.

        A missing refresh_token_enc keeps the stored one (providers only
        return a refresh token on first consent).
        """
        stmt = insert(EmailAccount).values(
            client_id=client_id,
            provider=provider,
            email_address=email_address,
            access_token_enc=access_token_enc,
            refresh_token_enc=refresh_token_enc,
            expires_at=expires_at,
            scopes=scopes,
            status=STATUS_CONNECTED,
            last_error=None,
            last_error_at=None,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[EmailAccount.client_id, EmailAccount.provider],
            set_={
                "email_address": stmt.excluded.email_address,
                "access_token_enc": stmt.excluded.access_token_enc,
                "refresh_token_enc": func.coalesce(
                    stmt.excluded.refresh_token_enc, EmailAccount.refresh_token_enc
                ),
                "expires_at": stmt.excluded.expires_at,
                "scopes": stmt.excluded.scopes,
                "status": STATUS_CONNECTED,
                "last_error": None,
                "last_error_at": None,
                "email_connection_status": None,
                "updated_at": utcnow(),
            },
        ).returning(EmailAccount)

        async with self._session_factory() as session:
            result = await session.scalars(
                stmt, execution_options={"populate_existing": True}
            )
            account = result.one()
            await session.commit()

        return account
