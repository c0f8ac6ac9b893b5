"""initial schema: users, credit ledger, scans, payments, scan queue

Revision ID: m1_initial_schema
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = 'm1_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ── user (credit account) ──
    op.create_table(
        'user',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('owner_id', sa.String(128), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('image_url', sa.String(1000), nullable=True),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('credits >= 0', name='ck_user_credits_non_negative'),
    )
    op.create_index('ix_user_owner_id', 'user', ['owner_id'], unique=True)
    op.create_index('ix_user_email', 'user', ['email'])

    # ── credit_entry ──
    op.create_table(
        'credit_entry',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('owner_id', sa.String(128), nullable=False),
        sa.Column('kind', sa.String(30), nullable=False),
        sa.Column('delta', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=True),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_credit_entry_owner_id', 'credit_entry', ['owner_id'])
    op.create_index('ix_credit_entry_reference', 'credit_entry', ['reference'])

    # ── scan_record ──
    op.create_table(
        'scan_record',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('scan_id', sa.String(128), nullable=False),
        sa.Column('owner_id', sa.String(128), nullable=False),
        sa.Column('file_name', sa.String(500), nullable=False),
        sa.Column('media_kind', sa.String(10), nullable=False, server_default='image'),
        sa.Column('state', sa.String(20), nullable=False, server_default='QUEUED'),
        sa.Column('confidence_score', sa.Integer(), nullable=True),
        sa.Column('model_breakdown', sa.JSON(), nullable=True),
        sa.Column('source_url', sa.String(2000), nullable=True),
        sa.Column('inline_media_ref', sa.String(100), nullable=True),
        sa.Column('provider_request_id', sa.String(255), nullable=True),
        sa.Column('provider_result', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_scan_record_scan_id', 'scan_record', ['scan_id'], unique=True)
    op.create_index('ix_scan_record_owner_id', 'scan_record', ['owner_id'])
    op.create_index('ix_scan_record_owner_created', 'scan_record', ['owner_id', 'created_at'])

    # ── payment ──
    op.create_table(
        'payment',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('reference', sa.String(255), nullable=False),
        sa.Column('owner_id', sa.String(128), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(10), nullable=False, server_default='USD'),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(50), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('raw', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_payment_reference', 'payment', ['reference'], unique=True)
    op.create_index('ix_payment_owner_id', 'payment', ['owner_id'])

    # ── scan_queue_job ──
    op.create_table(
        'scan_queue_job',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('queue_name', sa.String(100), nullable=False),
        sa.Column('scan_id', sa.String(128), nullable=False),
        sa.Column('owner_id', sa.String(128), nullable=False),
        sa.Column('media_kind', sa.String(10), nullable=False, server_default='image'),
        sa.Column('staged_media_path', sa.String(1000), nullable=True),
        sa.Column('source_url', sa.String(2000), nullable=True),
        sa.Column('state', sa.String(20), nullable=False, server_default='waiting'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_scan_queue_job_queue_name', 'scan_queue_job', ['queue_name'])
    op.create_index('ix_scan_queue_job_scan_id', 'scan_queue_job', ['scan_id'])
    op.create_index('ix_scan_queue_job_state', 'scan_queue_job', ['state'])


def downgrade():
    op.drop_table('scan_queue_job')
    op.drop_table('payment')
    op.drop_table('scan_record')
    op.drop_table('credit_entry')
    op.drop_table('user')
