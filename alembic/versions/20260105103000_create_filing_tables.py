"""create_filing_tables

Revision ID: 9f3a6c5e2b41
Revises: 4b8e1d2a7c10
Create Date: 2026-01-05 10:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '9f3a6c5e2b41'
down_revision: Union[str, Sequence[str], None] = '4b8e1d2a7c10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the tables written by the incremental filing sync."""
    # 13F
    op.create_table(
        'submissions_13f',
        sa.Column('accession_number', sa.String(length=20), nullable=False, primary_key=True),
        sa.Column('cik', sa.String(length=10), nullable=False),
        sa.Column('submission_type', sa.String(length=20), nullable=False),
        sa.Column('period_of_report', sa.String(length=20), nullable=True),
        sa.Column('filing_date', sa.Date(), nullable=False),
        sa.Column('filer_name', sa.String(length=200), nullable=True),
    )
    op.create_index('idx_submissions_13f_cik', 'submissions_13f', ['cik'])
    op.create_index('idx_submissions_13f_filing_date', 'submissions_13f', ['filing_date'])

    op.create_table(
        'holdings_13f',
        sa.Column('accession_number', sa.String(length=20), nullable=False),
        sa.Column('row_number', sa.Integer(), nullable=False),
        sa.Column('cusip', sa.String(length=9), nullable=True),
        sa.Column('name_of_issuer', sa.String(length=200), nullable=True),
        sa.Column('title_of_class', sa.String(length=150), nullable=True),
        sa.Column('value', sa.Float(), nullable=False, server_default='0'),
        sa.Column('shares', sa.Float(), nullable=False, server_default='0'),
        sa.Column('shares_type', sa.String(length=10), nullable=True),
        sa.Column('put_call', sa.String(length=10), nullable=True),
        sa.Column('investment_discretion', sa.String(length=10), nullable=True),
        sa.Column('voting_auth_sole', sa.Float(), nullable=False, server_default='0'),
        sa.Column('voting_auth_shared', sa.Float(), nullable=False, server_default='0'),
        sa.Column('voting_auth_none', sa.Float(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('accession_number', 'row_number'),
    )
    op.create_index('idx_holdings_13f_cusip', 'holdings_13f', ['cusip'])

    # Schedule 13D/13G
    op.create_table(
        'filings_13dg',
        sa.Column('accession_number', sa.String(length=20), nullable=False, primary_key=True),
        sa.Column('form_type', sa.String(length=20), nullable=False),
        sa.Column('filing_date', sa.Date(), nullable=False),
        sa.Column('issuer_cik', sa.String(length=10), nullable=True),
        sa.Column('issuer_name', sa.String(length=200), nullable=True),
        sa.Column('issuer_sic', sa.String(length=200), nullable=True),
        sa.Column('issuer_cusip', sa.String(length=9), nullable=True),
        sa.Column('filed_by_cik', sa.String(length=10), nullable=True),
        sa.Column('filed_by_name', sa.String(length=200), nullable=True),
        sa.Column('securities_class_title', sa.String(length=200), nullable=True),
        sa.Column('percent_of_class', sa.Float(), nullable=False, server_default='0'),
        sa.Column('shares_owned', sa.Float(), nullable=False, server_default='0'),
    )
    op.create_index('idx_filings_13dg_form_type', 'filings_13dg', ['form_type'])
    op.create_index('idx_filings_13dg_filing_date', 'filings_13dg', ['filing_date'])
    op.create_index('idx_filings_13dg_issuer_cik', 'filings_13dg', ['issuer_cik'])
    op.create_index('idx_filings_13dg_issuer_cusip', 'filings_13dg', ['issuer_cusip'])
    op.create_index('idx_filings_13dg_filed_by_cik', 'filings_13dg', ['filed_by_cik'])

    # Forms 3/4/5
    op.create_table(
        'form345_submissions',
        sa.Column('accession_number', sa.String(length=20), nullable=False, primary_key=True),
        sa.Column('filing_date', sa.Date(), nullable=False),
        sa.Column('period_of_report', sa.String(length=20), nullable=True),
        sa.Column('document_type', sa.String(length=10), nullable=True),
        sa.Column('issuer_cik', sa.String(length=10), nullable=False),
        sa.Column('issuer_name', sa.String(length=200), nullable=True),
        sa.Column('issuer_trading_symbol', sa.String(length=20), nullable=True),
        sa.Column('no_securities_owned', sa.String(length=5), nullable=True),
        sa.Column('not_subject_sec16', sa.String(length=5), nullable=True),
        sa.Column('remarks', sa.Text(), nullable=True),
    )
    op.create_index('idx_form345_submissions_filing_date', 'form345_submissions', ['filing_date'])
    op.create_index('idx_form345_submissions_issuer_cik', 'form345_submissions', ['issuer_cik'])
    op.create_index('idx_form345_submissions_symbol', 'form345_submissions', ['issuer_trading_symbol'])

    op.create_table(
        'form345_reporting_owners',
        sa.Column('accession_number', sa.String(length=20), nullable=False),
        sa.Column('owner_cik', sa.String(length=10), nullable=False),
        sa.Column('owner_name', sa.String(length=200), nullable=True),
        sa.Column('owner_relationship', sa.String(length=100), nullable=True),
        sa.Column('officer_title', sa.String(length=200), nullable=True),
        sa.Column('street1', sa.String(length=200), nullable=True),
        sa.Column('city', sa.String(length=100), nullable=True),
        sa.Column('state', sa.String(length=20), nullable=True),
        sa.Column('zip_code', sa.String(length=20), nullable=True),
        sa.PrimaryKeyConstraint('accession_number', 'owner_cik'),
    )

    op.create_table(
        'form345_nonderiv_trans',
        sa.Column('accession_number', sa.String(length=20), nullable=False),
        sa.Column('trans_sk', sa.Integer(), nullable=False),
        sa.Column('security_title', sa.String(length=200), nullable=True),
        sa.Column('trans_date', sa.String(length=20), nullable=True),
        sa.Column('trans_code', sa.String(length=5), nullable=True),
        sa.Column('trans_shares', sa.Float(), nullable=False, server_default='0'),
        sa.Column('trans_price_per_share', sa.Float(), nullable=False, server_default='0'),
        sa.Column('trans_acquired_disp_cd', sa.String(length=5), nullable=True),
        sa.Column('shares_owned_following', sa.Float(), nullable=False, server_default='0'),
        sa.Column('direct_indirect_ownership', sa.String(length=5), nullable=True),
        sa.PrimaryKeyConstraint('accession_number', 'trans_sk'),
    )


def downgrade() -> None:
    """Drop the filing tables and their indexes."""
    op.drop_table('form345_nonderiv_trans')
    op.drop_table('form345_reporting_owners')

    op.drop_index('idx_form345_submissions_symbol', table_name='form345_submissions')
    op.drop_index('idx_form345_submissions_issuer_cik', table_name='form345_submissions')
    op.drop_index('idx_form345_submissions_filing_date', table_name='form345_submissions')
    op.drop_table('form345_submissions')

    op.drop_index('idx_filings_13dg_filed_by_cik', table_name='filings_13dg')
    op.drop_index('idx_filings_13dg_issuer_cusip', table_name='filings_13dg')
    op.drop_index('idx_filings_13dg_issuer_cik', table_name='filings_13dg')
    op.drop_index('idx_filings_13dg_filing_date', table_name='filings_13dg')
    op.drop_index('idx_filings_13dg_form_type', table_name='filings_13dg')
    op.drop_table('filings_13dg')

    op.drop_index('idx_holdings_13f_cusip', table_name='holdings_13f')
    op.drop_table('holdings_13f')

    op.drop_index('idx_submissions_13f_filing_date', table_name='submissions_13f')
    op.drop_index('idx_submissions_13f_cik', table_name='submissions_13f')
    op.drop_table('submissions_13f')
