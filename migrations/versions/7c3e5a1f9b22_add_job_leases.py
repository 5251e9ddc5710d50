"""Add job_leases

Revision ID: 7c3e5a1f9b22
Revises: 4b1d2c9e7a10
Create Date: 2026-10-26 10:30:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c3e5a1f9b22'
down_revision = '4b1d2c9e7a10'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('job_leases',
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('holder', sa.String(length=36), nullable=False),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('name')
    )


def downgrade():
    op.drop_table('job_leases')
