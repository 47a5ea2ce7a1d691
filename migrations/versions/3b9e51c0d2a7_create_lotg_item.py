"""Create lotg_item document table

Revision ID: 3b9e51c0d2a7
Revises: 
Create Date: 2026-10-18 00:40:12.514802

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3b9e51c0d2a7'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # One row per job, question or hash guard; the full record lives in data
    op.create_table('lotg_item',
        sa.Column('pk', sa.Text(), nullable=False),
        sa.Column('sk', sa.Text(), nullable=False),
        sa.Column('item_type', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=True),
        sa.Column('law', sa.Text(), nullable=True),
        sa.Column('hash', sa.Text(), nullable=True),
        sa.Column('job_id', sa.Text(), nullable=True),
        # ISO-8601 UTC strings sort chronologically
        sa.Column('created_at', sa.Text(), nullable=True),
        sa.Column('data', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.PrimaryKeyConstraint('pk', 'sk')
    )

    # Secondary indexes used by the read paths
    op.create_index('ix_lotg_item_type_created', 'lotg_item', ['item_type', 'created_at'])
    op.create_index('ix_lotg_item_status_created', 'lotg_item', ['status', 'created_at'])
    op.create_index('ix_lotg_item_law_status', 'lotg_item', ['law', 'status', 'created_at'])
    op.create_index('ix_lotg_item_hash', 'lotg_item', ['hash'])
    op.create_index('ix_lotg_item_job_id', 'lotg_item', ['job_id', 'created_at'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_lotg_item_job_id', table_name='lotg_item')
    op.drop_index('ix_lotg_item_hash', table_name='lotg_item')
    op.drop_index('ix_lotg_item_law_status', table_name='lotg_item')
    op.drop_index('ix_lotg_item_status_created', table_name='lotg_item')
    op.drop_index('ix_lotg_item_type_created', table_name='lotg_item')
    op.drop_table('lotg_item')
