"""Create camp reservation schema

Revision ID: 001
Revises: 
Create Date: 2026-01-12 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_users_id', 'users', ['id'])
        op.create_index('ix_users_email', 'users', ['email'], unique=True)

    if 'applications' not in existing_tables:
        op.create_table(
            'applications',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('first_name', sa.String(length=100), nullable=False),
            sa.Column('last_name', sa.String(length=100), nullable=False),
            sa.Column('phone', sa.String(length=20), nullable=False),
            sa.Column('dietary_preference', sa.String(length=20), nullable=False),
            sa.Column('allergy_flag', sa.Boolean(), nullable=False),
            sa.Column('allergy_notes', sa.Text(), nullable=True),
            sa.Column('arrival', sa.Date(), nullable=False),
            sa.Column('arrival_time', sa.String(length=40), nullable=False),
            sa.Column('departure', sa.Date(), nullable=False),
            sa.Column('departure_time', sa.String(length=40), nullable=False),
            sa.Column('status', sa.String(length=50), nullable=False),
            sa.Column('payment_allowed', sa.Boolean(), nullable=False),
            sa.Column('early_departure_requested', sa.Boolean(), nullable=False),
            sa.Column('early_departure_reason', sa.Text(), nullable=True),
            sa.Column('checkout_session_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
            sa.Column('amount_paid_cents', sa.Integer(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='RESTRICT'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_applications_id', 'applications', ['id'])
        op.create_index('ix_applications_user_id', 'applications', ['user_id'], unique=True)
        op.create_index('ix_applications_email', 'applications', ['email'])
        op.create_index('ix_applications_arrival', 'applications', ['arrival'])
        op.create_index('ix_applications_departure', 'applications', ['departure'])
        op.create_index('ix_applications_status', 'applications', ['status'])
        op.create_index('ix_applications_checkout_session_id', 'applications', ['checkout_session_id'], unique=True)
        op.create_index('ix_applications_status_created', 'applications', ['status', 'created_at'])

    if 'ops_authorizations' not in existing_tables:
        op.create_table(
            'ops_authorizations',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('application_id', sa.Integer(), nullable=False),
            sa.Column('approver_email', sa.String(length=255), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['application_id'], ['applications.id'], ondelete='RESTRICT'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_ops_authorizations_id', 'ops_authorizations', ['id'])
        op.create_index('ix_ops_authorizations_application_id', 'ops_authorizations', ['application_id'])
        op.create_index('ix_ops_authorizations_status', 'ops_authorizations', ['status'])

    if 'email_allowlist' not in existing_tables:
        op.create_table(
            'email_allowlist',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('added_by', sa.String(length=255), nullable=False),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('added_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_email_allowlist_id', 'email_allowlist', ['id'])
        op.create_index('ix_email_allowlist_email', 'email_allowlist', ['email'], unique=True)
        op.create_index('ix_email_allowlist_added_at', 'email_allowlist', ['added_at'])

    if 'config_entries' not in existing_tables:
        op.create_table(
            'config_entries',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('key', sa.String(length=100), nullable=False),
            sa.Column('value', sa.Text(), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('updated_by', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_config_entries_id', 'config_entries', ['id'])
        op.create_index('ix_config_entries_key', 'config_entries', ['key'], unique=True)

    if 'event_logs' not in existing_tables:
        op.create_table(
            'event_logs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('application_id', sa.Integer(), nullable=True),
            sa.Column('stripe_session_id', sa.String(length=255), nullable=True),
            sa.Column('event_type', sa.String(length=50), nullable=False),
            sa.Column('payload', sa.Text(), nullable=False),
            sa.Column('actor', sa.String(length=255), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['application_id'], ['applications.id'], ondelete='RESTRICT'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_event_logs_id', 'event_logs', ['id'])
        op.create_index('ix_event_logs_application_id', 'event_logs', ['application_id'])
        op.create_index('ix_event_logs_stripe_session_id', 'event_logs', ['stripe_session_id'])
        op.create_index('ix_event_logs_event_type', 'event_logs', ['event_type'])
        op.create_index('ix_event_logs_created_at', 'event_logs', ['created_at'])
        op.create_index('ix_event_logs_application_created', 'event_logs', ['application_id', 'created_at'])

    if 'stripe_events' not in existing_tables:
        op.create_table(
            'stripe_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('processed', sa.Boolean(), nullable=False),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_stripe_events_id', 'stripe_events', ['id'])
        op.create_index('ix_stripe_events_stripe_event_id', 'stripe_events', ['stripe_event_id'], unique=True)
        op.create_index('ix_stripe_events_event_type', 'stripe_events', ['event_type'])


def downgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    # Children before parents
    for table in ('stripe_events', 'event_logs', 'config_entries', 'email_allowlist',
                  'ops_authorizations', 'applications', 'users'):
        if table in existing_tables:
            op.drop_table(table)
