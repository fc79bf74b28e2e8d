"""Initial Aegis schema

Revision ID: 3e7a91c0d4b2
Revises: 
Create Date: 2026-10-17 09:12:31.408215

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3e7a91c0d4b2'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('name', sa.String(length=256), nullable=True),
        sa.Column('auth_provider', sa.String(length=16), nullable=False),
        sa.Column('auth_provider_id', sa.String(length=256), nullable=True),
        sa.Column('password_hash', sa.String(length=256), nullable=True),
        sa.Column('role', sa.String(length=16), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)
    op.create_index(op.f('ix_users_auth_provider_id'), 'users', ['auth_provider_id'], unique=False)

    # Create devices table
    op.create_table(
        'devices',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.String(length=32), nullable=False),
        sa.Column('device_id', sa.String(length=256), nullable=False),
        sa.Column('device_name', sa.String(length=256), nullable=False),
        sa.Column('platform', sa.String(length=16), nullable=False),
        sa.Column('os_version', sa.String(length=64), nullable=False),
        sa.Column('app_version', sa.String(length=64), nullable=False),
        sa.Column('last_seen', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('device_id')
    )
    op.create_index(op.f('ix_devices_user_id'), 'devices', ['user_id'], unique=False)

    # Create push_tokens table
    op.create_table(
        'push_tokens',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('device_id', sa.String(length=32), nullable=False),
        sa.Column('token', sa.String(length=512), nullable=False),
        sa.Column('platform', sa.String(length=8), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['device_id'], ['devices.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token')
    )
    op.create_index(op.f('ix_push_tokens_device_id'), 'push_tokens', ['device_id'], unique=False)

    # Create threat_signatures table
    op.create_table(
        'threat_signatures',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('signature', sa.String(length=512), nullable=False),
        sa.Column('threat_name', sa.String(length=256), nullable=False),
        sa.Column('severity', sa.String(length=16), nullable=False),
        sa.Column('category', sa.String(length=16), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('signature')
    )
    op.create_index(op.f('ix_threat_signatures_severity'), 'threat_signatures', ['severity'], unique=False)
    op.create_index('ix_threat_signatures_type_active', 'threat_signatures', ['type', 'is_active'], unique=False)

    # Create scan_logs table
    op.create_table(
        'scan_logs',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('device_id', sa.String(length=32), nullable=False),
        sa.Column('scan_type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('files_scanned', sa.Integer(), nullable=True),
        sa.Column('threats_found', sa.Integer(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration', sa.Integer(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['device_id'], ['devices.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_scan_logs_device_id'), 'scan_logs', ['device_id'], unique=False)
    op.create_index(op.f('ix_scan_logs_status'), 'scan_logs', ['status'], unique=False)

    # Create quarantine table
    op.create_table(
        'quarantine',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('device_id', sa.String(length=32), nullable=False),
        sa.Column('scan_log_id', sa.String(length=32), nullable=True),
        sa.Column('threat_signature_id', sa.String(length=32), nullable=True),
        sa.Column('file_name', sa.String(length=512), nullable=False),
        sa.Column('file_path', sa.Text(), nullable=False),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('file_hash', sa.String(length=128), nullable=False),
        sa.Column('threat_name', sa.String(length=256), nullable=False),
        sa.Column('severity', sa.String(length=16), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=True),
        sa.Column('storage_key', sa.String(length=1024), nullable=True),
        sa.Column('upload_status', sa.String(length=16), nullable=True),
        sa.Column('uploaded_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['device_id'], ['devices.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['scan_log_id'], ['scan_logs.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['threat_signature_id'], ['threat_signatures.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_quarantine_device_id'), 'quarantine', ['device_id'], unique=False)
    op.create_index(op.f('ix_quarantine_threat_signature_id'), 'quarantine', ['threat_signature_id'], unique=False)
    op.create_index(op.f('ix_quarantine_file_hash'), 'quarantine', ['file_hash'], unique=False)
    op.create_index(op.f('ix_quarantine_status'), 'quarantine', ['status'], unique=False)

    # Create subscriptions table
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.String(length=32), nullable=False),
        sa.Column('tier', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('platform', sa.String(length=16), nullable=False),
        sa.Column('platform_sub_id', sa.String(length=512), nullable=True),
        sa.Column('receipt_data', sa.Text(), nullable=True),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('platform_sub_id')
    )
    op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_status'), 'subscriptions', ['status'], unique=False)

    # Create anti_theft_commands table
    op.create_table(
        'anti_theft_commands',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('device_id', sa.String(length=32), nullable=False),
        sa.Column('command_type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('issued_by', sa.String(length=32), nullable=False),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['device_id'], ['devices.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_anti_theft_commands_device_id'), 'anti_theft_commands', ['device_id'], unique=False)
    op.create_index(op.f('ix_anti_theft_commands_command_type'), 'anti_theft_commands', ['command_type'], unique=False)
    op.create_index(op.f('ix_anti_theft_commands_status'), 'anti_theft_commands', ['status'], unique=False)

    # Create telemetry_logs table
    op.create_table(
        'telemetry_logs',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.String(length=32), nullable=False),
        sa.Column('device_id', sa.String(length=32), nullable=True),
        sa.Column('event_type', sa.String(length=128), nullable=False),
        sa.Column('event_data', sa.JSON(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['device_id'], ['devices.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_telemetry_logs_user_id'), 'telemetry_logs', ['user_id'], unique=False)
    op.create_index(op.f('ix_telemetry_logs_event_type'), 'telemetry_logs', ['event_type'], unique=False)
    op.create_index(op.f('ix_telemetry_logs_timestamp'), 'telemetry_logs', ['timestamp'], unique=False)

    # Create admin_audit_logs table
    op.create_table(
        'admin_audit_logs',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('admin_id', sa.String(length=32), nullable=False),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('target_id', sa.String(length=64), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['admin_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_admin_audit_logs_admin_id'), 'admin_audit_logs', ['admin_id'], unique=False)
    op.create_index(op.f('ix_admin_audit_logs_action'), 'admin_audit_logs', ['action'], unique=False)
    op.create_index(op.f('ix_admin_audit_logs_timestamp'), 'admin_audit_logs', ['timestamp'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('admin_audit_logs')
    op.drop_table('telemetry_logs')
    op.drop_table('anti_theft_commands')
    op.drop_table('subscriptions')
    op.drop_table('quarantine')
    op.drop_table('scan_logs')
    op.drop_table('threat_signatures')
    op.drop_table('push_tokens')
    op.drop_table('devices')
    op.drop_table('users')
