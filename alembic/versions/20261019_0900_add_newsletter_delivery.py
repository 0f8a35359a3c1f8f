"""add_newsletter_delivery

Revision ID: 20261019_0900_newsletter
Revises: None
Create Date: 2026-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_0900_newsletter'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """
    Create subscriptions, newsletter issues, the issue delivery queue and idempotency records.
    """
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=50), server_default='pending_confirmation', nullable=False),
        sa.Column('subscribed_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    op.create_table(
        'newsletter_issues',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('text_body', sa.Text(), nullable=False),
        sa.Column('html_body', sa.Text(), nullable=False),
        sa.Column('created_by', sa.String(length=255), nullable=False),
        sa.Column('published_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'issue_delivery_queue',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('issue_id', sa.Integer(), nullable=False),
        sa.Column('subscriber_email', sa.String(length=320), nullable=False),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('claim_token', sa.String(length=36), nullable=True),
        sa.Column('claimed_until', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['issue_id'], ['newsletter_issues.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('issue_id', 'subscriber_email', name='uq_delivery_issue_email')
    )
    op.create_index('ix_delivery_next_attempt_at', 'issue_delivery_queue', ['next_attempt_at'])

    op.create_table(
        'idempotency_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('actor_id', sa.String(length=255), nullable=False),
        sa.Column('idempotency_key', sa.String(length=50), nullable=False),
        sa.Column('state', sa.String(length=20), server_default='pending', nullable=False),
        sa.Column('request_fingerprint', sa.String(length=64), nullable=True),
        sa.Column('response_status_code', sa.Integer(), nullable=True),
        sa.Column('response_headers', sa.JSON(), nullable=True),
        sa.Column('response_body', sa.LargeBinary(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('actor_id', 'idempotency_key', name='uq_idempotency_actor_key')
    )
    op.create_index('ix_idempotency_state_created_at', 'idempotency_records', ['state', 'created_at'])


def downgrade() -> None:
    """
    Drop all newsletter delivery tables.
    """
    op.drop_index('ix_idempotency_state_created_at', table_name='idempotency_records')
    op.drop_table('idempotency_records')

    op.drop_index('ix_delivery_next_attempt_at', table_name='issue_delivery_queue')
    op.drop_table('issue_delivery_queue')

    op.drop_table('newsletter_issues')

    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_table('subscriptions')
