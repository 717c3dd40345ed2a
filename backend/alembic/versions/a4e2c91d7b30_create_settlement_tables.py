"""create settlement tables

Revision ID: a4e2c91d7b30
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a4e2c91d7b30"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "artists",
        sa.Column("id", sa.UUID(as_uuid=False), nullable=False),
        sa.Column("user_id", sa.UUID(as_uuid=False), nullable=False),
        sa.Column("artist_name", sa.String(length=200), nullable=False),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.Column("avatar_url", sa.String(length=512), nullable=True),
        sa.Column("verified", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("wallet_address", sa.String(length=64), nullable=False),
        sa.Column("total_streams", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_earnings", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("pending_withdrawal", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("withdrawal_reservation_id", sa.UUID(as_uuid=False), nullable=True),
        sa.Column("withdrawal_reserved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("pending_withdrawal >= 0", name="ck_artists_pending_withdrawal_non_negative"),
        sa.CheckConstraint("pending_withdrawal <= total_earnings", name="ck_artists_pending_within_earnings"),
        sa.CheckConstraint("total_streams >= 0", name="ck_artists_total_streams_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_artists_user_id"), "artists", ["user_id"], unique=False)

    op.create_table(
        "tracks",
        sa.Column("id", sa.UUID(as_uuid=False), nullable=False),
        sa.Column("artist_id", sa.UUID(as_uuid=False), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("genre", sa.String(length=64), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("ipfs_cid", sa.String(length=128), nullable=False),
        sa.Column("cover_art_url", sa.String(length=512), nullable=True),
        sa.Column("stream_count", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["artist_id"], ["artists.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_tracks_artist_id"), "tracks", ["artist_id"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", sa.UUID(as_uuid=False), nullable=False),
        sa.Column("artist_id", sa.UUID(as_uuid=False), nullable=False),
        sa.Column("track_id", sa.UUID(as_uuid=False), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=16), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("transaction_signature", sa.String(length=128), nullable=True),
        sa.Column("stream_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("reconciliation_required", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("status IN ('pending', 'completed', 'failed')", name="ck_payments_status"),
        sa.CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        sa.ForeignKeyConstraint(["artist_id"], ["artists.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["track_id"], ["tracks.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_payments_artist_id"), "payments", ["artist_id"], unique=False)
    op.create_index(op.f("ix_payments_transaction_signature"), "payments", ["transaction_signature"], unique=False)

    op.create_table(
        "streams",
        sa.Column("id", sa.UUID(as_uuid=False), nullable=False),
        sa.Column("track_id", sa.UUID(as_uuid=False), nullable=False),
        sa.Column("listener_id", sa.UUID(as_uuid=False), nullable=True),
        sa.Column("completed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("duration_listened", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("streamed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("settled_payment_id", sa.UUID(as_uuid=False), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["settled_payment_id"], ["payments.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["track_id"], ["tracks.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_streams_track_id"), "streams", ["track_id"], unique=False)
    op.create_index(op.f("ix_streams_settled_payment_id"), "streams", ["settled_payment_id"], unique=False)
    op.create_index(
        "ix_streams_unsettled_window",
        "streams",
        ["streamed_at"],
        unique=False,
        postgresql_where=sa.text("completed AND settled_payment_id IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_streams_unsettled_window", table_name="streams")
    op.drop_index(op.f("ix_streams_settled_payment_id"), table_name="streams")
    op.drop_index(op.f("ix_streams_track_id"), table_name="streams")
    op.drop_table("streams")
    op.drop_index(op.f("ix_payments_transaction_signature"), table_name="payments")
    op.drop_index(op.f("ix_payments_artist_id"), table_name="payments")
    op.drop_table("payments")
    op.drop_index(op.f("ix_tracks_artist_id"), table_name="tracks")
    op.drop_table("tracks")
    op.drop_index(op.f("ix_artists_user_id"), table_name="artists")
    op.drop_table("artists")
