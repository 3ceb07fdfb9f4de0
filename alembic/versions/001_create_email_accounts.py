"""Create email_accounts table

Revision ID: 001
Revises:
Create Date: 2026-10-19

One row per connected mailbox (client, provider): encrypted OAuth tokens,
Gmail watch state, Microsoft Graph subscription state and health tracking.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create email_accounts."""

    op.create_table(
        'email_accounts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('email_address', sa.String(), nullable=False),
        sa.Column('status', sa.String(), server_default='connected', nullable=False),

        # Encrypted OAuth tokens (AES-256-GCM "nonce.tag.ciphertext")
        sa.Column('access_token_enc', sa.Text(), nullable=True),
        sa.Column('refresh_token_enc', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scopes', sa.Text(), nullable=True),

        # Gmail watch
        sa.Column('gmail_history_id', sa.String(), nullable=True),
        sa.Column('gmail_watch_expires_at', sa.DateTime(timezone=True), nullable=True),

        # Microsoft Graph subscription
        sa.Column('ms_subscription_id', sa.String(), nullable=True),
        sa.Column('ms_subscription_expires_at', sa.DateTime(timezone=True), nullable=True),

        # Health tracking
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_error_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_success_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('email_connection_status', sa.String(), nullable=True),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('client_id', 'provider', name='uq_email_accounts_client_provider'),
        sa.CheckConstraint("provider IN ('google', 'microsoft')", name='ck_email_accounts_provider'),
        sa.CheckConstraint("status IN ('connected', 'disconnected')", name='ck_email_accounts_status'),
    )
    op.create_index(op.f('ix_email_accounts_client_id'), 'email_accounts', ['client_id'], unique=False)

    # Renewal job scans Microsoft subscriptions by expiry
    op.create_index(
        'idx_email_accounts_ms_subscription_expiry',
        'email_accounts',
        ['ms_subscription_expires_at'],
        unique=False,
        postgresql_where=sa.text('ms_subscription_id IS NOT NULL'),
    )


def downgrade() -> None:
    """Drop email_accounts."""

    op.drop_index('idx_email_accounts_ms_subscription_expiry', table_name='email_accounts')
    op.drop_index(op.f('ix_email_accounts_client_id'), table_name='email_accounts')
    op.drop_table('email_accounts')
