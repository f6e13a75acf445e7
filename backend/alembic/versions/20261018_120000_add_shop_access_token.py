"""Add encrypted Shopify access token to shops

Revision ID: marketsync_shop_token_002
Revises: marketsync_initial_001
Create Date: 2026-10-18 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

revision = 'marketsync_shop_token_002'
down_revision = 'marketsync_initial_001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # AES-GCM ciphertext, see marketsync.utils.crypto
    op.add_column('shops', sa.Column('access_token', sa.Text(), nullable=True))


def downgrade() -> None:
    op.drop_column('shops', 'access_token')
