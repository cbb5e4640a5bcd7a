"""advisor feedback

Revision ID: 2026_10_18_0001
Revises: 2026_10_18_0000
Create Date: 2026-10-18 09:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0001'
down_revision: Union[str, None] = '2026_10_18_0000'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create advisor_feedback table for post-session star ratings."""
    op.create_table(
        'advisor_feedback',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('advisor_id', UUID(as_uuid=True), nullable=False),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('rating BETWEEN 1 AND 5', name='ck_advisor_feedback_rating'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_advisor_feedback_user', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(
            ['advisor_id'], ['advisors.id'], name='fk_advisor_feedback_advisor', ondelete='RESTRICT'
        ),
    )

    op.create_index('idx_advisor_feedback_advisor', 'advisor_feedback', ['advisor_id', 'created_at'])


def downgrade() -> None:
    """Drop advisor_feedback table."""
    op.drop_index('idx_advisor_feedback_advisor', table_name='advisor_feedback')
    op.drop_table('advisor_feedback')
