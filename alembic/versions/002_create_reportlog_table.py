"""create reportlog table

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'reportlog',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('domain', sa.String(length=255), nullable=True),
        sa.Column('external_id', sa.String(length=255), nullable=True),
        sa.Column('event_time', sa.DateTime(), nullable=False),
        sa.Column('filename', sa.String(length=255), nullable=True),
        sa.Column('source', sa.String(length=32), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_reportlog_event_time', 'reportlog', ['event_time'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_reportlog_event_time', table_name='reportlog')
    op.drop_table('reportlog')
