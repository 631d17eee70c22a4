"""create delivery tables

Revision ID: a7c1d2e3f401
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'a7c1d2e3f401'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'delivery_targets',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False, unique=True, comment='配信先名'),
        sa.Column('protocol', sa.Enum('FTP', 'SFTP', 'S3', 'Azure', 'API', 'Storage', name='delivery_protocol'), nullable=False),
        sa.Column('type', sa.Enum('DSP', 'Aggregator', 'Test', name='delivery_target_type'), nullable=False),
        sa.Column('connection_enc', sa.Text(), nullable=False, comment='暗号化された接続設定JSON'),
        sa.Column('config', sa.JSON(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'delivery_jobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('release_id', sa.String(128), nullable=False),
        sa.Column('target_id', sa.Integer(), nullable=False),
        sa.Column('idempotency_key', sa.String(512), nullable=False),
        sa.Column('tenant_id', sa.String(128), nullable=True),
        sa.Column('message_type', sa.String(64), nullable=False),
        sa.Column('message_sub_type', sa.Enum('Initial', 'Update', 'Takedown', name='ern_message_sub_type'), nullable=False),
        sa.Column('ern_message_id', sa.String(128), nullable=True),
        sa.Column('ern_version', sa.String(16), nullable=False),
        sa.Column('ern_xml', sa.Text(), nullable=True, comment='生成済みERNメッセージ'),
        sa.Column('upc', sa.String(14), nullable=True),
        sa.Column('asset_urls', sa.JSON(), nullable=True),
        sa.Column('status', sa.Enum('queued', 'processing', 'completed', 'failed', 'cancelled', name='delivery_job_status'), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('test_mode', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('redelivery_round', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('scheduled_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('receipt', sa.JSON(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('total_duration_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['target_id'], ['delivery_targets.id'], ondelete='RESTRICT'),
        sa.UniqueConstraint('idempotency_key'),
    )
    op.create_index('ix_delivery_jobs_release_id', 'delivery_jobs', ['release_id'])
    op.create_index('ix_delivery_jobs_target_id', 'delivery_jobs', ['target_id'])
    op.create_index('ix_delivery_jobs_tenant_id', 'delivery_jobs', ['tenant_id'])
    op.create_index('ix_delivery_jobs_queue', 'delivery_jobs', ['status', 'priority', 'scheduled_at'])

    op.create_table(
        'delivery_attempts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.Integer(), nullable=False),
        sa.Column('round', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('error_type', sa.String(100), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['job_id'], ['delivery_jobs.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('job_id', 'round', 'attempt_number', name='uq_attempt_job_round_number'),
    )
    op.create_index('ix_delivery_attempts_job_id', 'delivery_attempts', ['job_id'])

    op.create_table(
        'delivery_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.Integer(), nullable=False),
        sa.Column('level', sa.String(20), nullable=False),
        sa.Column('step', sa.String(64), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['job_id'], ['delivery_jobs.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_delivery_logs_job_id', 'delivery_logs', ['job_id'])
    op.create_index('ix_delivery_logs_created_at', 'delivery_logs', ['created_at'])

    op.create_table(
        'delivery_locks',
        sa.Column('lock_id', sa.String(512), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('released_at', sa.DateTime(), nullable=True),
        sa.Column('attempt', sa.Integer(), nullable=False),
        sa.Column('owner_instance_id', sa.String(255), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('lock_id'),
    )
    op.create_index('ix_delivery_locks_expires_at', 'delivery_locks', ['expires_at'])

    op.create_table(
        'delivery_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.Integer(), nullable=True),
        sa.Column('release_id', sa.String(128), nullable=False),
        sa.Column('target_id', sa.Integer(), nullable=False),
        sa.Column('target_name', sa.String(255), nullable=True),
        sa.Column('tenant_id', sa.String(128), nullable=True),
        sa.Column('message_type', sa.String(64), nullable=False),
        sa.Column('message_sub_type', sa.String(20), nullable=False),
        sa.Column('ern_version', sa.String(16), nullable=False),
        sa.Column('message_id', sa.String(128), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('receipt', sa.JSON(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['job_id'], ['delivery_jobs.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_delivery_history_job_id', 'delivery_history', ['job_id'])
    op.create_index('ix_delivery_history_release_id', 'delivery_history', ['release_id'])
    op.create_index('ix_delivery_history_target_id', 'delivery_history', ['target_id'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('release_id', sa.String(128), nullable=True),
        sa.Column('target_name', sa.String(255), nullable=True),
        sa.Column('tenant_id', sa.String(128), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['job_id'], ['delivery_jobs.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_notifications_job_id', 'notifications', ['job_id'])
    op.create_index('ix_notifications_tenant_id', 'notifications', ['tenant_id'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])


def downgrade() -> None:
    op.drop_table('notifications')
    op.drop_table('delivery_history')
    op.drop_table('delivery_locks')
    op.drop_table('delivery_logs')
    op.drop_table('delivery_attempts')
    op.drop_table('delivery_jobs')
    op.drop_table('delivery_targets')
