"""initial schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('username', sa.String(255), nullable=False),
        sa.Column('free_trial_used', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('free_trial_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    # ========================================================================
    # Create advisors table
    # ========================================================================
    op.create_table(
        'advisors',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('advisor_type', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint(
            "advisor_type IN ('Astrology', 'Love', 'Numerology', 'Tarot')", name='ck_advisor_type'
        ),
    )

    # ========================================================================
    # Create wallets table
    # ========================================================================
    op.create_table(
        'wallets',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('credits >= 0', name='ck_wallet_credits_non_negative'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_wallets_user', ondelete='RESTRICT'),
    )

    op.create_index('uq_wallets_user_id', 'wallets', ['user_id'], unique=True)

    # ========================================================================
    # Create chat_sessions table
    # ========================================================================
    op.create_table(
        'chat_sessions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('advisor_id', UUID(as_uuid=True), nullable=False),
        sa.Column('trial_started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('remaining_trial_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('trial_consumed', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('last_charged_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('paid_mode', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('paid_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('initial_credits', sa.BigInteger(), nullable=True),
        sa.Column('archived', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('remaining_trial_seconds >= 0', name='ck_remaining_trial_non_negative'),
        sa.CheckConstraint(
            'initial_credits IS NULL OR initial_credits >= 0', name='ck_initial_credits_non_negative'
        ),
        sa.CheckConstraint('NOT paid_mode OR paid_started_at IS NOT NULL', name='ck_paid_mode_has_start'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_chat_sessions_user', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(
            ['advisor_id'], ['advisors.id'], name='fk_chat_sessions_advisor', ondelete='RESTRICT'
        ),
    )

    # One live session per (user, advisor); archived rows are history
    op.create_index(
        'uq_chat_sessions_live_pair', 'chat_sessions', ['user_id', 'advisor_id'],
        unique=True, postgresql_where=sa.text('archived = false'),
    )
    op.create_index(
        'idx_chat_sessions_paid_sweep', 'chat_sessions', ['paid_mode'],
        postgresql_where=sa.text('archived = false'),
    )
    op.create_index(
        'idx_chat_sessions_trial_sweep', 'chat_sessions', ['trial_consumed'],
        postgresql_where=sa.text('archived = false'),
    )

    # ========================================================================
    # Create chat_messages table
    # ========================================================================
    op.create_table(
        'chat_messages',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('advisor_id', UUID(as_uuid=True), nullable=False),
        sa.Column('sender', sa.String(10), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint("sender IN ('user', 'ai')", name='ck_chat_message_sender'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_chat_messages_user', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(
            ['advisor_id'], ['advisors.id'], name='fk_chat_messages_advisor', ondelete='RESTRICT'
        ),
    )

    op.create_index(
        'idx_chat_messages_conversation', 'chat_messages', ['user_id', 'advisor_id', 'created_at']
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('chat_messages')
    op.drop_table('chat_sessions')
    op.drop_table('wallets')
    op.drop_table('advisors')
    op.drop_table('users')
