"""initial schema - create all tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00.000000

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
    # Publishers
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('username', sa.String(255), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
    )

    # Subscribers (status stores the enum name as VARCHAR, not a native enum)
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.Text(), nullable=False, unique=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('subscribed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING_CONFIRMATION'),
    )

    op.create_table(
        'subscription_tokens',
        sa.Column('subscription_token', sa.String(25), primary_key=True),
        sa.Column('subscriber_id', sa.String(36), sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False, index=True),
    )

    op.create_table(
        'newsletter_issues',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('text_content', sa.Text(), nullable=False),
        sa.Column('html_content', sa.Text(), nullable=False),
        sa.Column('published_by', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=False),
    )

    # Pending deliveries: presence of the row is the pending state
    op.create_table(
        'issue_delivery_queue',
        sa.Column('newsletter_issue_id', sa.String(36), sa.ForeignKey('newsletter_issues.id'), nullable=False),
        sa.Column('subscriber_email', sa.Text(), nullable=False),
        sa.Column('n_retries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('execute_after', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('retry_at', sa.DateTime(timezone=True), nullable=True, index=True),
        sa.PrimaryKeyConstraint('newsletter_issue_id', 'subscriber_email'),
    )

    op.create_table(
        'issue_delivery_dead_letters',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('newsletter_issue_id', sa.String(36), nullable=False, index=True),
        sa.Column('subscriber_email', sa.Text(), nullable=False),
        sa.Column('n_retries', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=False),
    )

    # Response columns stay NULL until the request that owns the key commits
    op.create_table(
        'idempotency',
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('idempotency_key', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('response_status_code', sa.SmallInteger(), nullable=True),
        sa.Column('response_headers', sa.JSON(), nullable=True),
        sa.Column('response_body', sa.LargeBinary(), nullable=True),
        sa.PrimaryKeyConstraint('user_id', 'idempotency_key'),
    )


def downgrade() -> None:
    op.drop_table('idempotency')
    op.drop_table('issue_delivery_dead_letters')
    op.drop_table('issue_delivery_queue')
    op.drop_table('newsletter_issues')
    op.drop_table('subscription_tokens')
    op.drop_table('subscriptions')
    op.drop_table('users')
