"""add payment_quotes

Revision ID: 5b2e8c41a9d3
Revises: 3f1c2a9d7e10
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '5b2e8c41a9d3'
down_revision = '3f1c2a9d7e10'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'payment_quotes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('job_id', sa.Integer(), sa.ForeignKey('jobs.id'), nullable=False, unique=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('amount_sats', sa.BigInteger(), nullable=False),
        sa.Column('sats_per_usd', sa.Numeric(20, 4), nullable=False),
        sa.Column('quoted_at', sa.DateTime(), nullable=False),
    )


def downgrade():
    op.drop_table('payment_quotes')
