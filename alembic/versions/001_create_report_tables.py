"""create report tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

from dmarc_store.models.types import (
    ALIGNMENT_VALUES, DISPOSITION_VALUES, IPAddressType, JSONText, LookupIndex
)


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create domains table
    op.create_table(
        'domains',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('fqdn', sa.String(length=255), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_time', sa.DateTime(), nullable=False),
        sa.Column('updated_time', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('fqdn')
    )

    # Create reports table
    op.create_table(
        'reports',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('domain_id', sa.Integer(), nullable=False),
        sa.Column('begin_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('loaded_time', sa.DateTime(), nullable=False),
        sa.Column('org', sa.String(length=255), nullable=False),
        sa.Column('external_id', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('extra_contact_info', sa.String(length=255), nullable=True),
        sa.Column('error_string', JSONText(), nullable=True),
        sa.Column('policy_adkim', sa.String(length=20), nullable=True),
        sa.Column('policy_aspf', sa.String(length=20), nullable=True),
        sa.Column('policy_p', sa.String(length=20), nullable=True),
        sa.Column('policy_sp', sa.String(length=20), nullable=True),
        sa.Column('policy_np', sa.String(length=20), nullable=True),
        sa.Column('policy_pct', sa.String(length=20), nullable=True),
        sa.Column('policy_fo', sa.String(length=20), nullable=True),
        sa.Column('seen', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['domain_id'], ['domains.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('domain_id', 'begin_time', 'org', 'external_id', name='org_time_id_u')
    )
    op.create_index('ix_reports_begin_time', 'reports', ['begin_time'], unique=False)
    op.create_index('ix_reports_end_time', 'reports', ['end_time'], unique=False)
    op.create_index('ix_reports_org_begin_time', 'reports', ['org', 'begin_time'], unique=False)

    # Create rptrecords table
    op.create_table(
        'rptrecords',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('report_id', sa.Integer(), nullable=False),
        sa.Column('ip', IPAddressType(), nullable=False),
        sa.Column('rcount', sa.Integer(), nullable=False),
        sa.Column('disposition', LookupIndex(DISPOSITION_VALUES), nullable=False),
        sa.Column('reason', JSONText(), nullable=True),
        sa.Column('dkim_auth', JSONText(), nullable=True),
        sa.Column('spf_auth', JSONText(), nullable=True),
        sa.Column('dkim_align', LookupIndex(ALIGNMENT_VALUES), nullable=False),
        sa.Column('spf_align', LookupIndex(ALIGNMENT_VALUES), nullable=False),
        sa.Column('envelope_to', sa.String(length=255), nullable=True),
        sa.Column('envelope_from', sa.String(length=255), nullable=True),
        sa.Column('header_from', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['report_id'], ['reports.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_rptrecords_report_id', 'rptrecords', ['report_id'], unique=False)
    op.create_index('ix_rptrecords_ip', 'rptrecords', ['ip'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_rptrecords_ip', table_name='rptrecords')
    op.drop_index('ix_rptrecords_report_id', table_name='rptrecords')
    op.drop_table('rptrecords')
    op.drop_index('ix_reports_org_begin_time', table_name='reports')
    op.drop_index('ix_reports_end_time', table_name='reports')
    op.drop_index('ix_reports_begin_time', table_name='reports')
    op.drop_table('reports')
    op.drop_table('domains')
