"""Messaging Core Tables

Revision ID: 0001_messaging_core
Revises:
Create Date: 2026-10-19

Creates tables owned by the SMS messaging core:
- messaging_service: Provider accounts/profiles per organization
- messaging_service_stick: Binds contact numbers to a messaging service
- message: All inbound/outbound messages
- pending_message_part: Inbound fragments awaiting reassembly
- log: Raw delivery report bodies

The campaign, assignment and campaign_contact tables belong to the
campaign app and are only created here when missing (local development).
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = '0001_messaging_core'
down_revision = None
branch_labels = None
depends_on = None


def _create_campaign_tables_if_missing():
    existing = sa.inspect(op.get_bind()).get_table_names()

    if 'campaign' not in existing:
        op.create_table(
            'campaign',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('organization_id', sa.Integer(), nullable=False),
            sa.Column('title', sa.String(255), server_default='', nullable=False),
            sa.Column('is_archived', sa.Boolean(), server_default=sa.text('false'), nullable=False),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_campaign_organization_id', 'campaign', ['organization_id'])

    if 'assignment' not in existing:
        op.create_table(
            'assignment',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('campaign_id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=True),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['campaign_id'], ['campaign.id']),
        )
        op.create_index('ix_assignment_campaign_id', 'assignment', ['campaign_id'])

    if 'campaign_contact' not in existing:
        op.create_table(
            'campaign_contact',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('campaign_id', sa.Integer(), nullable=False),
            sa.Column('assignment_id', sa.Integer(), nullable=True),
            sa.Column('cell', sa.String(32), nullable=False),
            sa.Column('zip', sa.String(16), nullable=True),
            sa.Column('is_opted_out', sa.Boolean(), server_default=sa.text('false'), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['campaign_id'], ['campaign.id']),
            sa.ForeignKeyConstraint(['assignment_id'], ['assignment.id']),
        )
        op.create_index('idx_campaign_contact_campaign_cell', 'campaign_contact', ['campaign_id', 'cell'])
        op.create_index('idx_campaign_contact_cell', 'campaign_contact', ['cell'])


def upgrade():
    _create_campaign_tables_if_missing()

    # =========================================================================
    # MESSAGING SERVICE
    # =========================================================================

    op.create_table(
        'messaging_service',
        sa.Column('messaging_service_sid', sa.String(255), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('service_type', sa.String(50), nullable=False),
        sa.Column('account_sid', sa.String(255), nullable=True),
        sa.Column('encrypted_auth_token', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('messaging_service_sid'),
    )
    op.create_index('idx_messaging_service_org_active', 'messaging_service', ['organization_id', 'is_active'])

    # =========================================================================
    # MESSAGING SERVICE STICK
    # =========================================================================

    op.create_table(
        'messaging_service_stick',
        sa.Column('cell', sa.String(32), nullable=False),
        sa.Column('organization_id', sa.Integer(), nullable=False),
        sa.Column('messaging_service_sid', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('cell', 'organization_id', name='pk_messaging_service_stick'),
        sa.ForeignKeyConstraint(['messaging_service_sid'], ['messaging_service.messaging_service_sid']),
    )
    op.create_index(
        'idx_messaging_service_stick_sid_cell',
        'messaging_service_stick',
        ['messaging_service_sid', 'cell'],
    )

    # =========================================================================
    # MESSAGE
    # =========================================================================

    op.create_table(
        'message',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('campaign_contact_id', sa.Integer(), nullable=True),
        sa.Column('assignment_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('contact_number', sa.String(32), nullable=False),
        sa.Column('user_number', sa.String(32), server_default='', nullable=False),
        sa.Column('is_from_contact', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('text', sa.Text(), server_default='', nullable=False),
        sa.Column('media_urls', JSONB(), nullable=True),
        sa.Column('service', sa.String(50), server_default='', nullable=False),
        sa.Column('service_id', sa.String(255), nullable=True),
        sa.Column('send_status', sa.String(20), server_default='queued', nullable=False),
        sa.Column('service_response', sa.Text(), server_default='', nullable=False),
        sa.Column('num_segments', sa.Integer(), nullable=True),
        sa.Column('num_media', sa.Integer(), nullable=True),
        sa.Column('error_codes', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('service_response_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['campaign_contact_id'], ['campaign_contact.id']),
        sa.ForeignKeyConstraint(['assignment_id'], ['assignment.id']),
        sa.UniqueConstraint('service', 'service_id', name='uq_message_service_service_id'),
    )
    op.create_index('ix_message_campaign_contact_id', 'message', ['campaign_contact_id'])
    op.create_index('idx_message_contact_number_created', 'message', ['contact_number', 'created_at'])
    op.create_index('idx_message_send_status', 'message', ['send_status'])

    # =========================================================================
    # PENDING MESSAGE PART
    # =========================================================================

    op.create_table(
        'pending_message_part',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('service', sa.String(50), nullable=False),
        sa.Column('service_id', sa.String(255), nullable=False),
        sa.Column('parent_id', sa.Integer(), nullable=True),
        sa.Column('service_message', sa.Text(), nullable=False),
        sa.Column('user_number', sa.String(32), server_default='', nullable=False),
        sa.Column('contact_number', sa.String(32), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['parent_id'], ['pending_message_part.id']),
        sa.UniqueConstraint('service', 'service_id', name='uq_pending_message_part_service_id'),
    )
    op.create_index('idx_pending_message_part_parent', 'pending_message_part', ['parent_id'])

    # =========================================================================
    # DELIVERY REPORT LOG
    # =========================================================================

    op.create_table(
        'log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('message_sid', sa.String(255), nullable=False),
        sa.Column('service_type', sa.String(50), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_log_message_sid', 'log', ['message_sid'])


def downgrade():
    op.drop_table('log')
    op.drop_table('pending_message_part')
    op.drop_table('message')
    op.drop_table('messaging_service_stick')
    op.drop_table('messaging_service')
