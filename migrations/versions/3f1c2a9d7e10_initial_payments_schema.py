"""Initial schema: users, runner profiles, jobs and the payment ledger

Revision ID: 3f1c2a9d7e10
Revises:
Create Date: 2026-09-28
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '3f1c2a9d7e10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(length=100), nullable=False, unique=True),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='client'),
        sa.Column('api_key_hash', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_api_key_hash', 'users', ['api_key_hash'])

    op.create_table(
        'runner_profiles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('display_name', sa.String(length=100), nullable=True),
        sa.Column('lightning_address', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'jobs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=30), nullable=True),
        sa.Column('client_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('runner_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('payment_confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_jobs_status', 'jobs', ['status'])
    op.create_index('ix_jobs_client_id', 'jobs', ['client_id'])
    op.create_index('ix_jobs_runner_id', 'jobs', ['runner_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('job_id', sa.Integer(), sa.ForeignKey('jobs.id'), nullable=False),
        sa.Column('active_job_id', sa.Integer(), nullable=True, unique=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('transaction_type', sa.String(length=20), nullable=False, server_default='job_payment'),
        sa.Column('payment_hash', sa.String(length=64), nullable=False, unique=True),
        sa.Column('preimage', sa.String(length=64), nullable=True),
        sa.Column('payment_request', sa.Text(), nullable=True),
        sa.Column('amount_sats', sa.BigInteger(), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=True),
        sa.Column('sats_per_usd', sa.Numeric(precision=20, scale=4), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('payment_method', sa.String(length=20), nullable=True),
        sa.Column('verification_level', sa.String(length=30), nullable=False, server_default='pending'),
        sa.Column('proof_image', sa.Text(), nullable=True),
        sa.Column('provider', sa.String(length=20), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('dispute_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('amount_sats > 0', name='ck_payments_amount_positive'),
    )
    op.create_index('ix_payments_job_id', 'payments', ['job_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    # Stuck-payment scans and the expiry sweep
    op.create_index('ix_payments_status_created', 'payments', ['status', 'created_at'])
    # 24h metrics window
    op.create_index('ix_payments_type_created', 'payments', ['transaction_type', 'created_at'])


def downgrade():
    op.drop_index('ix_payments_type_created', table_name='payments')
    op.drop_index('ix_payments_status_created', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_job_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_jobs_runner_id', table_name='jobs')
    op.drop_index('ix_jobs_client_id', table_name='jobs')
    op.drop_index('ix_jobs_status', table_name='jobs')
    op.drop_table('jobs')
    op.drop_table('runner_profiles')
    op.drop_index('ix_users_api_key_hash', table_name='users')
    op.drop_table('users')
