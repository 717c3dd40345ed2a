"""add withdrawal amount and signature to reservations

Revision ID: d81f5b0e6c42
Revises: a4e2c91d7b30
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "d81f5b0e6c42"
down_revision = "a4e2c91d7b30"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("artists", sa.Column("withdrawal_amount", sa.BigInteger(), nullable=True))
    op.add_column("artists", sa.Column("withdrawal_signature", sa.String(length=128), nullable=True))


def downgrade() -> None:
    op.drop_column("artists", "withdrawal_signature")
    op.drop_column("artists", "withdrawal_amount")
