"""Initial schema: affiliations and member login tokens

Revision ID: 001
Revises:
Create Date: 2026-01-10 00:00:00.000000

Creates the affiliation register and the one-time login token table used by
the member magic link.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'affiliations',
        sa.Column('id', sa.String(15), primary_key=True),
        sa.Column('order_id', sa.String(64), unique=True, nullable=True, index=True),
        sa.Column('member_number', sa.String(32), unique=True, nullable=True, index=True),
        sa.Column('first_name', sa.String(80), nullable=False),
        sa.Column('last_name', sa.String(80), nullable=False),
        sa.Column('email', sa.String(200), nullable=False, index=True),
        sa.Column('phone', sa.String(25), nullable=False),
        sa.Column('privacy', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payer_email', sa.String(200), nullable=True, index=True),
        sa.Column('status', sa.Enum('pending', 'completed', name='affiliationstatus', create_constraint=True), nullable=False, server_default='pending', index=True),
        sa.Column('member_since', sa.DateTime(timezone=True), nullable=True),
        sa.Column('member_until', sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column('confirmation_email_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('membership_card_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_paypal_status', sa.String(32), nullable=True),
        sa.Column('last_paypal_checked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    op.create_table(
        'member_login_tokens',
        sa.Column('id', sa.String(15), primary_key=True),
        sa.Column('token_hash', sa.String(64), unique=True, nullable=False, index=True),
        sa.Column('affiliation_id', sa.String(15), sa.ForeignKey('affiliations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('source', sa.String(32), nullable=False, server_default='fenam'),
        sa.Column('return_url', sa.String(2000), nullable=True),
        sa.Column('request_ip', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        sa.Column('created', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    # Rate limiting counts recent tokens per affiliation
    op.create_index('ix_member_login_tokens_affiliation_created', 'member_login_tokens', ['affiliation_id', 'created'])


def downgrade() -> None:
    op.drop_index('ix_member_login_tokens_affiliation_created', table_name='member_login_tokens')
    op.drop_table('member_login_tokens')
    op.drop_table('affiliations')
    op.execute('DROP TYPE IF EXISTS affiliationstatus')
