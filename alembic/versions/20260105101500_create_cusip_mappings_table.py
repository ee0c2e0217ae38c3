"""create_cusip_mappings_table

Revision ID: 4b8e1d2a7c10
Revises:
Create Date: 2026-01-05 10:15:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4b8e1d2a7c10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create cusip_mappings table, the durable tier of the CUSIP mapping cache."""
    op.create_table(
        'cusip_mappings',
        sa.Column('cusip', sa.String(length=9), nullable=False, primary_key=True),
        sa.Column('figi', sa.String(length=12), nullable=True),
        sa.Column('ticker', sa.String(length=20), nullable=True),
        sa.Column('name', sa.String(length=200), nullable=True),
        sa.Column('exchange_code', sa.String(length=10), nullable=True),
        sa.Column('security_type', sa.String(length=50), nullable=True),
        sa.Column('market_sector', sa.String(length=50), nullable=True),
        sa.Column('error', sa.String(length=500), nullable=True),
        sa.Column('error_class', sa.String(length=10), nullable=True),
        sa.Column('cached_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
    )

    # A row is either a success (no error) or a failure (error + class + expiry)
    op.create_check_constraint(
        'ck_cusip_mappings_shape',
        'cusip_mappings',
        "(error IS NULL AND error_class IS NULL) OR "
        "(error IS NOT NULL AND error_class IN ('transient', 'permanent') AND ticker IS NULL)"
    )

    op.create_index('idx_cusip_mappings_ticker', 'cusip_mappings', ['ticker'])

    # Expired failures are retried and swept by clear-expired
    op.create_index(
        'idx_cusip_mappings_expires_at',
        'cusip_mappings',
        ['expires_at'],
        postgresql_where=sa.text('error IS NOT NULL')
    )


def downgrade() -> None:
    """Drop cusip_mappings table and related indexes."""
    op.drop_index('idx_cusip_mappings_expires_at', table_name='cusip_mappings')
    op.drop_index('idx_cusip_mappings_ticker', table_name='cusip_mappings')
    op.drop_constraint('ck_cusip_mappings_shape', 'cusip_mappings', type_='check')
    op.drop_table('cusip_mappings')
